import time


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_list_and_get_workstations(client):
    response = client.get("/api/workstations")
    assert response.status_code == 200
    [workstation] = response.get_json()["workstations"]
    assert workstation["workstation_id"] == "ws-1"
    assert workstation["status"] == "idle"
    assert workstation["devices"] == {"dev1": True}

    assert client.get("/api/workstations/ws-1").get_json()["name"] == "Bench 1"
    missing = client.get("/api/workstations/ws-404")
    assert missing.status_code == 404
    assert "ws-404" in missing.get_json()["error"]


def test_start_requires_a_known_process(client):
    assert client.post("/api/workstations/ws-1/start", json={}).status_code == 400
    response = client.post("/api/workstations/ws-1/start", json={"process_id": "nope"})
    assert response.status_code == 400
    assert "nope" in response.get_json()["error"]


def test_run_lifecycle_through_the_api(client, runtime):
    started = client.post("/api/workstations/ws-1/start", json={"process_id": "burn-in"})
    assert started.status_code == 201
    run_id = started.get_json()["run_id"]
    assert started.get_json()["status"] == "running"

    assert client.post("/api/workstations/ws-1/start", json={"process": "burn-in"}).status_code == 409
    assert wait_for(lambda: client.get("/api/workstations/ws-1").get_json()["run"]["state"] == "Running")

    paused = client.post("/api/workstations/ws-1/pause")
    assert paused.get_json()["status"] == "paused"
    assert client.post("/api/workstations/ws-1/pause").status_code == 409
    assert client.post("/api/workstations/ws-1/resume").get_json()["state"] == "Running"

    stopped = client.post("/api/workstations/ws-1/stop")
    assert stopped.status_code == 200
    assert stopped.get_json()["status"] == "stopped"
    assert client.post("/api/workstations/ws-1/stop").status_code == 409

    log = client.get("/api/workstations/ws-1/log?limit=2").get_json()
    assert len(log["entries"]) == 2
    assert "stopped" in log["entries"][-1]["message"]

    history = client.get("/api/workstations/ws-1/history").get_json()
    assert [run["run_id"] for run in history["runs"]] == [run_id]


def test_series_as_json_and_csv(client, repository):
    repository.add_process(
        {
            "id": "recorded",
            "name": "Recorded",
            "devices": [{"alias": "dev1", "deviceTypeId": "TempSensor"}],
            "states": [{"name": "Hold", "mode": "condition", "conditions": []}],
            "recording": {"recordAll": True},
        }
    )
    assert client.get("/api/workstations/ws-1/series").status_code == 404

    client.post("/api/workstations/ws-1/start", json={"process_id": "recorded"})
    assert wait_for(
        lambda: "dev1.temperature" in client.get("/api/workstations/ws-1/series").get_json()["series"]
    )
    client.post("/api/workstations/ws-1/stop")

    csv = client.get("/api/workstations/ws-1/series?format=csv")
    assert csv.mimetype == "text/csv"
    assert "ws-1-series.csv" in csv.headers["Content-Disposition"]
    assert csv.get_data(as_text=True).splitlines()[0] == "timestamp,dev1.setpoint,dev1.temperature"


def test_delete_workstation(client):
    client.post("/api/workstations/ws-1/start", json={"process_id": "burn-in"})
    assert client.delete("/api/workstations/ws-1").status_code == 409
    client.post("/api/workstations/ws-1/stop")

    response = client.delete("/api/workstations/ws-1")
    assert response.get_json() == {"deleted": "ws-1"}
    assert client.get("/api/workstations/ws-1").status_code == 404


def test_device_endpoints(client, runtime):
    [device] = client.get("/api/devices").get_json()["devices"]
    assert device["device_id"] == "dev1"
    assert device["online"] is True
    assert client.get("/api/devices/dev1").get_json()["values"]["setpoint"] == 60
    assert client.get("/api/devices/ghost").status_code == 404


def test_point_writes_are_queued_and_validated(client, runtime):
    url = "/api/devices/dev1/points/setpoint"
    assert client.post(url, json={}).status_code == 400
    assert client.post("/api/devices/ghost/points/setpoint", json={"value": 1}).status_code == 400
    assert client.post("/api/devices/dev1/points/unknown", json={"value": 1}).status_code == 400
    assert client.post(url, json={"value": 40000}).status_code == 400

    response = client.post(url, json={"value": 55})
    assert response.status_code == 202
    assert response.get_json() == {"device_id": "dev1", "point": "setpoint", "queued": True}
    assert runtime.polling.get("dev1").pending_writes() == 1


def test_list_processes(client):
    [process] = client.get("/api/processes").get_json()["processes"]
    assert process == {"id": "burn-in", "name": "Burn-in", "states": ["Running"]}
