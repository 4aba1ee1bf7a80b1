from datetime import datetime, timedelta, timezone

from burnin.models.device import DeviceType
from burnin.models.process import RecordingConfig
from burnin.services.recorder import RunRecorder


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_first_call_samples_then_waits_for_interval(store):
    store.publish("dev1", {"temperature": 20.0, "setpoint": 60})
    clock = FakeClock()
    recorder = RunRecorder({"dev1": "dev1"}, store, RecordingConfig(recordAll=True), default_interval_s=5, clock=clock)

    assert recorder.maybe_sample() is True
    clock.now = 4.9
    assert recorder.maybe_sample() is False
    clock.now = 5.0
    store.publish("dev1", {"temperature": 21.0})
    assert recorder.maybe_sample() is True

    series = recorder.series()
    assert [value for _, value in series["dev1.temperature"]] == [20.0, 21.0]
    assert len(series["dev1.setpoint"]) == 2


def test_curated_selection_only_records_listed_points(store):
    store.publish("dev1", {"temperature": 20.0, "setpoint": 60})
    config = RecordingConfig(points=[("dev1", "temperature"), ("ghost", "temperature")])
    recorder = RunRecorder({"dev1": "dev1"}, store, config)

    assert recorder.sample() == 1
    assert list(recorder.series()) == ["dev1.temperature"]


def test_unpolled_points_are_skipped(store):
    config = RecordingConfig(points=[("dev1", "temperature")])
    recorder = RunRecorder({"dev1": "dev1"}, store, config)
    assert recorder.sample() == 0
    assert recorder.series() == {}


def test_series_are_bounded(store):
    store.publish("dev1", {"temperature": 1.0})
    recorder = RunRecorder({"dev1": "dev1"}, store, RecordingConfig(recordAll=True), max_samples=3)
    for _ in range(5):
        recorder.sample()
    assert len(recorder.series()["dev1.temperature"]) == 3


def test_dataframe_is_wide_and_csv_has_one_column_per_series(store):
    recorder = RunRecorder({"dev1": "dev1"}, store, RecordingConfig(recordAll=True))
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    store.publish("dev1", {"temperature": 20.0, "setpoint": 60})
    recorder.sample(base)
    store.publish("dev1", {"temperature": 22.5})
    recorder.sample(base + timedelta(seconds=5))

    frame = recorder.to_dataframe()
    assert list(frame.columns) == ["dev1.setpoint", "dev1.temperature"]
    assert len(frame) == 2
    assert frame["dev1.temperature"].iloc[-1] == 22.5

    header = recorder.to_csv().splitlines()[0]
    assert header == "timestamp,dev1.setpoint,dev1.temperature"
    assert recorder.latest() == {"dev1.temperature": 22.5, "dev1.setpoint": 60}


def test_exports_for_empty_recording(store):
    recorder = RunRecorder({"dev1": "dev1"}, store, RecordingConfig())
    exports = recorder.exports()
    assert exports["json"] == "{}"
    assert exports["csv"].strip() == "timestamp"


def test_important_points_are_recorded_when_nothing_is_curated(store, dev1):
    flagged = DeviceType.model_validate(
        {
            "id": "TempSensor",
            "name": "Temperature sensor",
            "registerMap": [
                {"name": "temperature", "address": 40001, "isImportant": True},
                {"name": "setpoint", "address": 40002},
            ],
        }
    )
    store.register_device(dev1, flagged)
    store.publish("dev1", {"temperature": 20.0, "setpoint": 60})
    recorder = RunRecorder({"dev1": "dev1"}, store, RecordingConfig())

    assert recorder.selection() == [("dev1", "temperature")]
    assert recorder.sample() == 1
    assert list(recorder.series()) == ["dev1.temperature"]
