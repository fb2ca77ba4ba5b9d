import os
import enum
import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from typing import NamedTuple, Optional

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import BadRequest, HTTPException, MethodNotAllowed
import requests

# ----------------------
# Constants
# ----------------------
TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_METHOD = "getMe"
METHOD_MARKER = "/api/"
PROXY_METHODS = ["GET", "POST", "OPTIONS"]
ALLOWED_HEADERS = ["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"]
CREDENTIAL_FIELDS = ("bot_token", "chat_id")
GENERIC_ERROR = "An internal server error occurred."
REDACTED = "***"

# Logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("telegram-proxy")


# ----------------------
# Configuration
# ----------------------
@dataclass(frozen=True)
class ProxyConfig:
    """Process-wide defaults, read once at startup."""

    bot_token: Optional[str] = None
    default_chat_id: Optional[str] = None
    api_base: str = TELEGRAM_API_BASE
    cors_origins: tuple = ("*",)
    upload_dir: Optional[str] = None
    upstream_timeout: Optional[float] = None

    @classmethod
    def from_env(cls, environ=None) -> "ProxyConfig":
        env = os.environ if environ is None else environ

        def get(name):
            value = env.get(name, "").strip()
            return value or None

        origins = tuple(o.strip() for o in (get("FRONTEND_ORIGIN") or "*").split(",") if o.strip())
        timeout = get("UPSTREAM_TIMEOUT")
        return cls(
            bot_token=get("BOT_TOKEN"),
            default_chat_id=get("DEFAULT_CHAT_ID"),
            api_base=(get("TELEGRAM_API_BASE") or TELEGRAM_API_BASE).rstrip("/"),
            cors_origins=origins or ("*",),
            upload_dir=get("UPLOAD_DIR"),
            upstream_timeout=float(timeout) if timeout else None,
        )


# ----------------------
# Helpers
# ----------------------
class ParamSource(enum.Enum):
    QUERY = "query"
    BODY = "body"
    DEFAULT = "default"


class Param(NamedTuple):
    value: Optional[str]
    source: Optional[ParamSource]


class Upload(NamedTuple):
    field: str
    filename: str
    content_type: Optional[str]
    path: str
    stream: object


def resolve_method(path: str) -> str:
    """Upstream method name after the first '/api/' marker, else getMe."""
    _, marker, rest = path.partition(METHOD_MARKER)
    if not marker:
        return DEFAULT_METHOD
    return rest.split("?", 1)[0] or DEFAULT_METHOD


def resolve_param(name: str, query, body, default=None) -> Param:
    """Resolve a parameter with precedence query > body > configured default."""
    if query.get(name):
        return Param(query[name], ParamSource.QUERY)
    if body.get(name):
        return Param(body[name], ParamSource.BODY)
    if default:
        return Param(default, ParamSource.DEFAULT)
    return Param(None, None)


def redact(value, secrets):
    """Replace bot tokens in a diagnostic value before it leaves the process."""
    secrets = [str(s) for s in secrets if s]
    if isinstance(value, str):
        for secret in secrets:
            value = value.replace(secret, REDACTED)
        return value
    if isinstance(value, dict):
        return {k: redact(v, secrets) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v, secrets) for v in value]
    return value


@contextmanager
def spooled_uploads(files, upload_dir=None):
    """Spool uploaded file parts to disk, removing them on every exit path.

    Yields a list of Upload records whose streams are positioned at the
    start of the spooled content.
    """
    uploads = []
    try:
        for field, storage in files.items(multi=True):
            handle = tempfile.NamedTemporaryFile(delete=False, dir=upload_dir, prefix="tg-upload-")
            uploads.append(Upload(
                field=field or "file",
                filename=storage.filename or "file",
                content_type=storage.mimetype or None,
                path=handle.name,
                stream=handle,
            ))
            storage.save(handle)
            handle.seek(0)
        yield uploads
    finally:
        for upload in uploads:
            upload.stream.close()
            try:
                os.remove(upload.path)
            except OSError as e:
                logger.error("Error deleting temp file %s: %s", upload.path, e)


def request_body() -> dict:
    """Inbound body as a flat dict: a JSON object, or the submitted form fields."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise BadRequest("JSON body must be an object")
        return data
    return request.form.to_dict()


def upstream_details(response):
    try:
        return response.json()
    except ValueError:
        return response.text


def error_response(exc: Exception, secrets):
    """Build the error envelope for a failed forward."""
    upstream = exc.response if isinstance(exc, requests.RequestException) else None
    if upstream is not None:
        status = upstream.status_code
        details = redact(upstream_details(upstream), secrets)
        logger.warning("Telegram API rejected request (%s): %s", status, details)
    elif isinstance(exc, HTTPException):
        status = exc.code
        details = exc.description
        logger.warning("Rejected malformed request: %s", details)
    else:
        status = 500
        details = redact(str(exc), secrets)
        logger.exception("API proxy error: %s", details)
    return jsonify({"ok": False, "error_message": GENERIC_ERROR, "details": details}), status


# ----------------------
# App Setup
# ----------------------
def create_app(config: Optional[ProxyConfig] = None, session: Optional[requests.Session] = None) -> Flask:
    config = config or ProxyConfig.from_env()
    session = session or requests.Session()

    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions["telegram_proxy"] = {"config": config, "session": session}

    # Registered before CORS(app) so it runs after flask-cors has set its headers.
    # flask-cors stays silent without an Origin header; a disallowed Origin is left unanswered.
    @app.after_request
    def add_cors_defaults(response):
        if not request.headers.get("Origin"):
            response.headers.setdefault("Access-Control-Allow-Origin", "*")
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Methods", ", ".join(PROXY_METHODS))
        response.headers.setdefault("Access-Control-Allow-Headers", ", ".join(ALLOWED_HEADERS))
        return response

    CORS(
        app,
        origins=list(config.cors_origins),
        supports_credentials=True,
        methods=PROXY_METHODS,
        allow_headers=ALLOWED_HEADERS,
    )

    # ----------------------
    # Endpoints
    # ----------------------
    @app.route("/health", methods=["GET", "OPTIONS"])
    def health_check():
        if request.method == "OPTIONS":
            return "", 204
        return jsonify({"status": "proxy-running"}), 200

    @app.route("/", defaults={"path": ""}, methods=PROXY_METHODS)
    @app.route("/<path:path>", methods=PROXY_METHODS)
    def telegram_proxy(path):
        if request.method == "OPTIONS":
            return "", 204

        secrets = {config.bot_token, request.args.get("bot_token")}
        try:
            method = resolve_method(request.path)
            query = request.args.to_dict()
            body = request_body()

            token = resolve_param("bot_token", query, body, config.bot_token)
            chat_id = resolve_param("chat_id", query, body, config.default_chat_id)
            secrets.add(token.value)
            url = f"{config.api_base}/bot{token.value or ''}/{method}"

            if request.method in ("GET", "HEAD"):
                params = dict(query)
                if not params.get("chat_id") and chat_id.value:
                    params["chat_id"] = chat_id.value
                params.pop("bot_token", None)

                logger.info("Forwarding GET %s", method)
                resp = session.get(url, params=params, timeout=config.upstream_timeout)

            elif request.files:
                fields = [
                    (key, value)
                    for key, value in request.form.items(multi=True)
                    if key not in CREDENTIAL_FIELDS
                ]
                if chat_id.value:
                    fields.append(("chat_id", chat_id.value))

                with spooled_uploads(request.files, config.upload_dir) as uploads:
                    files = [(u.field, (u.filename, u.stream, u.content_type)) for u in uploads]
                    logger.info("Forwarding multipart POST %s with %d file(s)", method, len(files))
                    resp = session.post(url, data=fields, files=files, timeout=config.upstream_timeout)

            else:
                payload = dict(body)
                if not payload.get("chat_id") and chat_id.value:
                    payload["chat_id"] = chat_id.value
                payload.pop("bot_token", None)

                logger.info("Forwarding JSON POST %s", method)
                resp = session.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=config.upstream_timeout,
                )

            resp.raise_for_status()
            return jsonify(resp.json()), resp.status_code
        except Exception as e:
            return error_response(e, secrets)

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(e):
        response = jsonify({
            "ok": False,
            "error_message": "Method not allowed.",
            "details": f"Method {request.method} is not allowed",
        })
        response.status_code = 405
        response.headers["Allow"] = ", ".join(e.valid_methods or PROXY_METHODS)
        return response

    return app


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
