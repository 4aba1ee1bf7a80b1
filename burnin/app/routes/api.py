"""Workstation, run and device endpoints."""
from __future__ import annotations

from typing import Any, Callable

from flask import Blueprint, Response, current_app, jsonify, request

from burnin.errors import ConfigError, ConflictError, NotFoundError
from burnin.services.engine_runtime import EngineRuntime, get_runtime
from burnin.utils.logs import logger

api_bp = Blueprint("api", __name__)


def _runtime() -> EngineRuntime:
    runtime = get_runtime(current_app)
    if runtime is None:
        raise RuntimeError("engine runtime not registered on this application")
    return runtime


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    return fn(*args)


def on_engine(fn: Callable[..., Any], *args: Any) -> Any:
    """Execute ``fn`` on the engine loop so it never races a tick."""

    runtime = _runtime()
    if runtime.running:
        return runtime.submit(_call(fn, *args))
    return fn(*args)


def command(coro_fn: Callable[..., Any], *args: Any) -> Any:
    runtime = _runtime()
    return runtime.submit(coro_fn(*args))


@api_bp.errorhandler(ConfigError)
def _config_error(exc: ConfigError):
    return jsonify({"error": str(exc)}), 400


@api_bp.errorhandler(ConflictError)
def _conflict_error(exc: ConflictError):
    return jsonify({"error": str(exc)}), 409


@api_bp.errorhandler(NotFoundError)
def _not_found(exc: NotFoundError):
    return jsonify({"error": str(exc)}), 404


@api_bp.errorhandler(TimeoutError)
def _timeout(exc: TimeoutError):
    logger.warning("API command timed out: %s", exc)
    return jsonify({"error": str(exc)}), 504


# ----------------------------------------------------------------------
# Workstations
# ----------------------------------------------------------------------
@api_bp.route("/workstations", methods=["GET"])
def list_workstations():
    supervisor = _runtime().supervisor
    return jsonify({"workstations": on_engine(supervisor.list_workstations)})


@api_bp.route("/workstations/<workstation_id>", methods=["GET"])
def workstation_status(workstation_id: str):
    return jsonify(on_engine(_runtime().supervisor.status, workstation_id))


@api_bp.route("/workstations/<workstation_id>", methods=["DELETE"])
def delete_workstation(workstation_id: str):
    command(_runtime().supervisor.delete, workstation_id)
    return jsonify({"deleted": workstation_id})


@api_bp.route("/workstations/<workstation_id>/start", methods=["POST"])
def start_run(workstation_id: str):
    payload = request.get_json(silent=True) or {}
    process_id = payload.get("process_id") or payload.get("process")
    if not process_id:
        return jsonify({"error": "process_id is required"}), 400
    run = command(_runtime().supervisor.start, workstation_id, str(process_id))
    return jsonify(run.summary()), 201


@api_bp.route("/workstations/<workstation_id>/pause", methods=["POST"])
def pause_run(workstation_id: str):
    run = command(_runtime().supervisor.pause, workstation_id)
    return jsonify(run.summary())


@api_bp.route("/workstations/<workstation_id>/resume", methods=["POST"])
def resume_run(workstation_id: str):
    run = command(_runtime().supervisor.resume, workstation_id)
    return jsonify(run.summary())


@api_bp.route("/workstations/<workstation_id>/stop", methods=["POST"])
def stop_run(workstation_id: str):
    run = command(_runtime().supervisor.stop, workstation_id)
    return jsonify(run.summary())


@api_bp.route("/workstations/<workstation_id>/log", methods=["GET"])
def run_log(workstation_id: str):
    limit = request.args.get("limit", type=int)
    entries = on_engine(_runtime().supervisor.run_log, workstation_id, limit)
    return jsonify({"workstation_id": workstation_id, "entries": entries})


@api_bp.route("/workstations/<workstation_id>/history", methods=["GET"])
def run_history(workstation_id: str):
    runs = on_engine(_runtime().supervisor.history, workstation_id)
    return jsonify({"workstation_id": workstation_id, "runs": runs})


@api_bp.route("/workstations/<workstation_id>/series", methods=["GET"])
def run_series(workstation_id: str):
    recorder = on_engine(_runtime().supervisor.recorder, workstation_id)
    if (request.args.get("format") or "").lower() == "csv":
        response = Response(recorder.to_csv(), mimetype="text/csv")
        response.headers["Content-Disposition"] = f"attachment; filename={workstation_id}-series.csv"
        return response
    return jsonify({"workstation_id": workstation_id, "series": recorder.series()})


# ----------------------------------------------------------------------
# Devices
# ----------------------------------------------------------------------
@api_bp.route("/devices", methods=["GET"])
def list_devices():
    return jsonify({"devices": _runtime().device_status()})


@api_bp.route("/devices/<device_id>", methods=["GET"])
def device_detail(device_id: str):
    try:
        status = _runtime().store.status(device_id)
    except KeyError:
        raise NotFoundError(f"unknown device {device_id!r}") from None
    return jsonify(status)


@api_bp.route("/devices/<device_id>/points/<point>", methods=["POST"])
def write_point(device_id: str, point: str):
    payload = request.get_json(silent=True) or {}
    if "value" not in payload:
        return jsonify({"error": "value is required"}), 400
    _runtime().write_point(device_id, point, payload["value"])
    return jsonify({"device_id": device_id, "point": point, "queued": True}), 202


@api_bp.route("/processes", methods=["GET"])
def list_processes():
    processes = _runtime().repository.processes()
    return jsonify(
        {
            "processes": [
                {"id": process.id, "name": process.name, "states": [state.name for state in process.states]}
                for process in processes
            ]
        }
    )


__all__ = ["api_bp"]
