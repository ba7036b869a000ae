"""Web UI routes for dashmark.

One session per app: a single source is selected, processed and downloaded
at a time, and requests that would start a second run get 409.
"""

import asyncio
import io
import json
import logging
import queue
import shutil
import threading
import uuid
from dataclasses import asdict
from pathlib import Path

from flask import (
    Blueprint,
    Response,
    current_app,
    jsonify,
    render_template,
    request,
    send_file,
)

from dashmark.engine import WatermarkSession
from dashmark.errors import (
    DashmarkError,
    NoArtifactError,
    NoFileSelectedError,
    RunInProgressError,
    WrongFileTypeError,
)

LOG = logging.getLogger(__name__)

bp = Blueprint("web", __name__, template_folder="templates")

STATUS_FOR_KIND = {
    "input": 400,
    "capability": 503,
    "playback": 422,
    "empty_capture": 500,
    "finalization": 500,
}


def _session() -> WatermarkSession:
    return current_app.config["SESSION"]


def _error(e: DashmarkError, status: int | None = None):
    if status is None:
        status = 409 if isinstance(e, (RunInProgressError, NoArtifactError)) else STATUS_FOR_KIND.get(e.kind, 400)
    return jsonify({"error": e.message, "kind": e.kind}), status


@bp.route("/")
def index():
    return render_template("index.html")


@bp.route("/api/upload", methods=["POST"])
def upload():
    session = _session()
    f = request.files.get("file")
    if f is None or not f.filename:
        return _error(session.fail(NoFileSelectedError()), 400)
    if session.state.busy or current_app.config["RUN_LOCK"].locked():
        return _error(session.fail(RunInProgressError()))

    upload_dir = Path(current_app.config["WORK_DIR"]) / uuid.uuid4().hex[:12]
    upload_dir.mkdir(parents=True, exist_ok=True)
    ext = Path(f.filename).suffix or ".mp4"
    input_path = upload_dir / f"input{ext}"
    f.save(input_path)

    try:
        source = session.select(input_path, f.filename, f.mimetype)
    except WrongFileTypeError as e:
        shutil.rmtree(upload_dir, ignore_errors=True)
        return _error(e, 415)
    except DashmarkError as e:
        shutil.rmtree(upload_dir, ignore_errors=True)
        return _error(e)

    previous = current_app.config.get("UPLOAD_DIR")
    current_app.config["UPLOAD_DIR"] = upload_dir
    if previous is not None and previous != upload_dir:
        shutil.rmtree(previous, ignore_errors=True)

    return jsonify({
        "filename": f.filename,
        "start_time": session.time_origin.isoformat(sep=" "),
        "degraded": session.degraded_origin,
        "width": source.width,
        "height": source.height,
        "duration": source.duration,
    })


@bp.route("/api/process", methods=["POST"])
def start_process():
    session = _session()
    lock: threading.Lock = current_app.config["RUN_LOCK"]
    if session.source is None:
        return _error(session.fail(NoFileSelectedError()), 409)
    if not lock.acquire(blocking=False):
        return _error(session.fail(RunInProgressError()))

    progress_queue: queue.Queue = queue.Queue()
    current_app.config["PROGRESS_QUEUE"] = progress_queue

    def on_progress(stage: str, percent: float) -> None:
        progress_queue.put({"state": stage, "progress": round(percent, 1)})

    session.on_progress = on_progress

    def run():
        try:
            asyncio.run(session.run())
        except DashmarkError:
            pass  # already recorded on session.errors
        except Exception:
            LOG.exception("Unexpected failure while processing")
        finally:
            progress_queue.put(None)  # sentinel
            lock.release()

    threading.Thread(target=run, daemon=True).start()
    return jsonify({"status": "started"})


def _result_summary(session: WatermarkSession) -> dict | None:
    result = session.result
    if result is None:
        return None
    return {
        "format": result.profile.mime_type,
        "extension": result.profile.extension,
        "size": result.artifact.size,
        "frames": result.frames_composited,
        "first_overlay": result.first_overlay,
        "last_overlay": result.last_overlay,
    }


@bp.route("/api/progress")
def progress_stream():
    session = _session()
    q = current_app.config.get("PROGRESS_QUEUE")

    if q is None:
        return jsonify({"error": "No processing in progress"}), 409

    def generate():
        while True:
            try:
                msg = q.get(timeout=120)
            except queue.Empty:
                yield "data: {\"error\": \"timeout\"}\n\n"
                break
            if msg is None:
                if session.result is None:
                    message = session.errors[-1].message if session.errors else "Processing failed"
                    data = json.dumps({"state": session.state.value, "error": message})
                else:
                    data = json.dumps({
                        "state": "complete",
                        "progress": 100.0,
                        "result": _result_summary(session),
                    })
                yield f"data: {data}\n\n"
                break
            yield f"data: {json.dumps(msg)}\n\n"

    return Response(generate(), mimetype="text/event-stream")


@bp.route("/api/status")
def status():
    session = _session()
    return jsonify({
        "state": session.state.value,
        "progress": round(session.progress, 1),
        "filename": session.filename,
        "result": _result_summary(session),
        "errors": [asdict(e) for e in session.errors[-5:]],
    })


@bp.route("/api/result")
def download_result():
    session = _session()
    try:
        artifact, name = session.download()
    except NoArtifactError as e:
        return _error(e, 409)

    return send_file(
        io.BytesIO(artifact.data),
        mimetype=artifact.mime_type,
        as_attachment=True,
        download_name=name,
    )
