import atexit
import logging
import os
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

import click
from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    Response,
    abort,
    g,
    jsonify,
    redirect,
    request,
    send_from_directory,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException, MethodNotAllowed

from .config import load_config
from .deletion import DeferredDeleter
from .errors import ClientError, NotFoundError, StorageError, format_bytes
from .logs import RequestAwareLogger, configure_logging, sanitize_log_value
from .naming import content_type_for_key
from .shortener import build_shortener
from .storage import LocalObjectStore
from .sweeper import SweepResult, sweep_expired_files
from .uploads import (
    DEFAULT_CONTENT_TYPE,
    render_upload_response_text,
    store_upload,
    wants_short_url,
)

CONFIG = load_config()
configure_logging(CONFIG["logs_dir"], CONFIG["log_level"])

STATIC_ASSETS = {"index.html", "style.css", "upload.js"}
CLI_USER_AGENT_MARKERS = ("curl", "wget", "httpie", "powershell")
UPLOAD_METHODS = ["GET", "PUT"]

lifecycle_logger = RequestAwareLogger(logging.getLogger("oneshare.lifecycle"))

store = LocalObjectStore(CONFIG["objects_dir"])
store.ensure_directories()
shortener = build_shortener(CONFIG)
deleter = DeferredDeleter(store, delay_seconds=CONFIG["delete_delay_ms"] / 1000.0)
# Drain pending one-time deletes before the interpreter exits.
atexit.register(lambda: deleter.shutdown(wait=True))

app = Flask(__name__, static_folder=None)
app.config["MAX_UPLOAD_SIZE"] = CONFIG["max_upload_size"]
app.config["MAX_AGE"] = CONFIG["max_age_seconds"]

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=CONFIG["rate_limit_storage"],
    enabled=CONFIG["rate_limit_enabled"],
)


def upload_rate_limit_string() -> str:
    return f"{CONFIG['upload_rate_limit_per_hour']} per hour"


def download_rate_limit_string() -> str:
    return f"{CONFIG['download_rate_limit_per_minute']} per minute"


def plain_text(body: str, status: int = 200) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def is_cli_client(user_agent: Optional[str]) -> bool:
    lowered = (user_agent or "").lower()
    return any(marker in lowered for marker in CLI_USER_AGENT_MARKERS)


def human_duration(seconds: int) -> str:
    if seconds % 3600 == 0 and seconds >= 3600:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours != 1 else ''}"
    if seconds % 60 == 0 and seconds >= 60:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds} seconds"


def usage_banner(host: str) -> str:
    return (
        "oneshare - one-time file sharing\n"
        "\n"
        "Usage:\n"
        f"  curl {host} -T file.txt          # normal URL\n"
        f"  curl {host}/short -T file.txt    # short URL\n"
        "\n"
        "Features:\n"
        "  * Files can only be downloaded once\n"
        "  * Files are deleted right after the download\n"
        f"  * Files nobody downloads expire after {human_duration(CONFIG['max_age_seconds'])}\n"
        f"  * Max upload size: {format_bytes(CONFIG['max_upload_size'])}\n"
    )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(ClientError)
def handle_client_error(error: ClientError):
    return plain_text(f"{error}\n", error.status_code)


@app.errorhandler(StorageError)
def handle_storage_error(error: StorageError):
    lifecycle_logger.error("storage_error error=%s", sanitize_log_value(str(error)))
    return plain_text(f"Error: {error}\n", 500)


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    response = plain_text(f"{error.name}\n", error.code or 500)
    if isinstance(error, MethodNotAllowed) and error.valid_methods:
        response.headers["Allow"] = ", ".join(error.valid_methods)
    return response


def handle_upload() -> Response:
    try:
        result = store_upload(
            store,
            request.stream,
            content_type=request.headers.get("Content-Type"),
            content_length=request.content_length,
            base_url=f"{request.scheme}://{request.host}",
            want_short=wants_short_url(request.path),
            shortener=shortener,
            max_upload_size=CONFIG["max_upload_size"],
        )
    except StorageError as error:
        lifecycle_logger.error(
            "upload_failed reason=write_error error=%s", sanitize_log_value(str(error))
        )
        return plain_text(f"Upload failed: {error}\n", 500)

    response = plain_text(render_upload_response_text(result))
    response.headers["X-One-Time-Upload"] = "true"
    return response


def serve_static_asset(name: str) -> Optional[Response]:
    static_dir = CONFIG["static_dir"]
    if name not in STATIC_ASSETS or not (static_dir / name).is_file():
        return None
    return send_from_directory(static_dir, name)


def download_once(key: str) -> Response:
    stored = store.get(key)
    if stored is None:
        lifecycle_logger.warning("file_download_missing key=%s", sanitize_log_value(key))
        raise NotFoundError()

    info = stored.info
    content_type = info.content_type or content_type_for_key(key) or "application/octet-stream"
    # Served exactly as recorded at upload, without an added charset.
    # content_type= keeps the declared type verbatim; mimetype= would add a charset.
    response = Response(stored.iter_chunks(), content_type=content_type)
    response.call_on_close(stored.close)
    response.content_length = info.size
    response.headers["Content-Disposition"] = f"inline; filename={key}"
    if info.etag:
        response.set_etag(info.etag)
    response.headers["X-One-Time-Download"] = "true"
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    response.headers["Content-Security-Policy"] = "sandbox"

    # Runs once the server has finished sending the body.
    response.call_on_close(lambda: deleter.schedule(key))
    lifecycle_logger.info("file_downloaded key=%s size=%d", key, info.size)
    return response


@app.route("/", methods=UPLOAD_METHODS, provide_automatic_options=False)
@limiter.limit(lambda: upload_rate_limit_string(), methods=["PUT"])
def index():
    if request.method == "PUT":
        return handle_upload()
    if request.method != "GET":
        abort(405)
    if is_cli_client(request.headers.get("User-Agent")):
        return plain_text(usage_banner(request.host))
    return redirect("/index.html", code=302)


@app.route("/health", methods=UPLOAD_METHODS, provide_automatic_options=False)
def health_check():
    if request.method == "PUT":
        return handle_upload()

    checks = {}
    healthy = True
    try:
        store.check_writable()
        checks["storage_writable"] = "ok"
    except StorageError as error:
        checks["storage_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    if scheduler is not None:
        job = scheduler.get_job("sweep_expired_files")
        if job and job.next_run_time:
            checks["sweeper"] = "scheduled"
            checks["sweeper_next_run"] = job.next_run_time.isoformat()
        else:
            checks["sweeper"] = "not_scheduled"
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["sweeper"] = "external"
        checks["scheduler_running"] = False
    checks["pending_deletes"] = deleter.pending_count()

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


@app.route("/<path:key>", methods=UPLOAD_METHODS, provide_automatic_options=False)
@limiter.limit(lambda: upload_rate_limit_string(), methods=["PUT"])
@limiter.limit(lambda: download_rate_limit_string(), methods=["GET"])
def object_route(key: str):
    if request.method == "PUT":
        return handle_upload()
    # HEAD must not consume a one-time file.
    if request.method != "GET":
        abort(405)
    asset = serve_static_asset(key)
    if asset is not None:
        return asset
    return download_once(key)


def run_sweep(max_age: Optional[int] = None) -> SweepResult:
    if max_age is None:
        max_age = CONFIG["max_age_seconds"]
    result = sweep_expired_files(store, max_age, max_workers=CONFIG["sweep_workers"])
    try:
        purged = store.purge_orphans(max_age)
    except StorageError as error:
        lifecycle_logger.error("orphan_purge_failed error=%s", sanitize_log_value(str(error)))
        return result
    return replace(result, purged=purged)


@app.cli.command("sweep")
@click.option("--max-age", type=int, default=None, help="Override MAX_AGE in seconds.")
def sweep_command(max_age: Optional[int]) -> None:
    """Delete expired files and stale partial writes once, then print the counts."""

    result = run_sweep(max_age)
    click.echo(
        f"checked={result.checked} deleted={result.deleted} failed={result.failed} "
        f"purged={result.purged}"
    )


scheduler = None
if CONFIG["scheduler_enabled"]:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_sweep,
        trigger="interval",
        minutes=CONFIG["sweep_interval_minutes"],
        id="sweep_expired_files",
        name="Delete expired files",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        # First pass right after startup, off the import path.
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
