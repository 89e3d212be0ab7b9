import logging
import secrets
import time
from datetime import datetime, timezone
from functools import wraps

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_login import LoginManager, current_user, login_required, login_user, logout_user
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

import audit
from audit import AuditAction
from config import Config
from errors import InvalidRequest, NotFound, StorageError
from jobs import purge_expired_shares, purge_old_trash, reap_stale_uploads, reconcile_all_quotas, reconcile_quota
from models import Account, Plan
from services import Services, configure_logging

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)
internal = Blueprint("internal", __name__, url_prefix="/internal")

login_manager = LoginManager()

MAX_DISPLAY_NAME_LENGTH = 100
STARTED_AT = time.monotonic()


def create_app(config_object=Config, object_store=None, scanner=None, http=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    configure_logging(app.config["LOG_LEVEL"])

    app.extensions["cloudvault"] = Services(
        app.config, object_store=object_store, scanner=scanner, http=http
    )

    login_manager.init_app(app)
    app.register_blueprint(api)
    app.register_blueprint(internal)

    @app.errorhandler(StorageError)
    def handle_storage_error(error):
        if error.status_code >= 500:
            logger.error("%s on %s %s: %s", error.code, request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    return app


def get_services() -> Services:
    return current_app.extensions["cloudvault"]


@login_manager.user_loader
def load_user(user_id):
    with get_services().Session() as session:
        return session.get(Account, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "UNAUTHORIZED", "message": "Login required"}), 401


def require_api_secret(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("API_SECRET") or ""
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else ""
        if not expected or not secrets.compare_digest(token.encode(), expected.encode()):
            return jsonify({"error": "UNAUTHORIZED", "message": "Invalid API secret"}), 401
        return view(*args, **kwargs)
    return wrapper


def _body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return data


def _int(value, field, required=False):
    if value is None:
        if required:
            raise InvalidRequest(f"{field} is required")
        return None
    if isinstance(value, bool):
        raise InvalidRequest(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{field} must be an integer")


def _page_args(default_limit):
    return (
        _int(request.args.get("page"), "page") or 1,
        _int(request.args.get("limit"), "limit") or default_limit,
    )


def _timestamp(value, field):
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise InvalidRequest(f"{field} must be an ISO 8601 timestamp")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# Account


@api.route("/register", methods=["POST"])
def register():
    data = _body()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or "@" not in email:
        raise InvalidRequest("A valid email is required")
    if len(password) < 8:
        raise InvalidRequest("Password must be at least 8 characters")

    with get_services().Session() as session:
        if session.execute(select(Account.id).where(Account.email == email)).first():
            raise InvalidRequest("Email is already registered")
        account = Account(
            email=email,
            password_hash=generate_password_hash(password),
            plan=Plan.FREE,
            used_bytes=0,
        )
        session.add(account)
        session.flush()
        audit.record(session, account.id, AuditAction.USER_REGISTER, "account", account.id)
        session.commit()

    logger.info("Registered account %s", account.id)
    return jsonify({"id": account.id, "email": account.email, "plan": account.plan.value}), 201


@api.route("/login", methods=["POST"])
def login():
    data = _body()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    with get_services().Session() as session:
        account = session.execute(select(Account).where(Account.email == email)).scalar_one_or_none()
        if account is None or not check_password_hash(account.password_hash, password):
            return jsonify({"error": "INVALID_CREDENTIALS", "message": "Invalid email or password"}), 401
        audit.record(session, account.id, AuditAction.USER_LOGIN, "account", account.id)
        session.commit()

    login_user(account)
    return jsonify({"id": account.id, "email": account.email, "plan": account.plan.value})


@api.route("/logout", methods=["POST"])
@login_required
def logout():
    with get_services().Session() as session:
        audit.record(session, current_user.id, AuditAction.USER_LOGOUT, "account", current_user.id)
        session.commit()
    logout_user()
    return jsonify({"success": True})


@api.route("/health")
def health():
    started = time.monotonic()
    try:
        with get_services().Session() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check failed: %s", e)
        return jsonify({"status": "error", "database": {"status": "down"}}), 503
    return jsonify({
        "status": "ok",
        "database": {"status": "up", "latencyMs": round((time.monotonic() - started) * 1000, 2)},
        "uptimeSeconds": round(time.monotonic() - STARTED_AT),
    })


@api.route("/me")
@login_required
def me():
    with get_services().Session() as session:
        return jsonify(session.get(Account, current_user.id).to_dict())


@api.route("/me", methods=["PATCH"])
@login_required
def update_me():
    data = _body()
    if "displayName" not in data:
        raise InvalidRequest("Nothing to update")
    display_name = data["displayName"]
    if display_name is not None:
        if not isinstance(display_name, str):
            raise InvalidRequest("displayName must be a string")
        display_name = display_name.strip() or None
        if display_name and len(display_name) > MAX_DISPLAY_NAME_LENGTH:
            raise InvalidRequest(f"displayName must be at most {MAX_DISPLAY_NAME_LENGTH} characters")

    with get_services().Session() as session:
        account = session.get(Account, current_user.id)
        account.display_name = display_name
        audit.record(session, account.id, AuditAction.USER_UPDATE, "account", account.id,
                     {"displayName": display_name})
        session.commit()
        return jsonify(account.to_dict())


@api.route("/me/quota")
@login_required
def my_quota():
    svc = get_services()
    with svc.Session() as session:
        return jsonify(svc.ledger.usage(session, current_user.id))


@api.route("/me/audit")
@login_required
def my_audit_log():
    page, limit = _page_args(50)
    with get_services().Session() as session:
        return jsonify(audit.list_for_account(session, current_user.id, page, limit))


# Uploads


@api.route("/uploads", methods=["POST"])
@login_required
def initiate_upload():
    data = _body()
    result = get_services().uploads.initiate(
        current_user.id,
        _int(data.get("folderId"), "folderId"),
        data.get("name"),
        _int(data.get("size"), "size", required=True),
        data.get("mime"),
    )
    return jsonify(result), 201


@api.route("/uploads/<upload_id>/complete", methods=["POST"])
@login_required
def complete_upload(upload_id):
    parts = _body().get("parts")
    if not isinstance(parts, list) or not parts:
        raise InvalidRequest("parts must be a non-empty list")
    file = get_services().uploads.complete(current_user.id, upload_id, parts)
    return jsonify(file.to_dict()), 201


@api.route("/uploads/<upload_id>", methods=["DELETE"])
@login_required
def abort_upload(upload_id):
    get_services().uploads.abort(upload_id, account_id=current_user.id)
    return jsonify({"success": True})


# Files


@api.route("/files")
@login_required
def list_files():
    page, limit = _page_args(20)
    folder_id = _int(request.args.get("folderId"), "folderId")
    return jsonify(get_services().files.list_files(current_user.id, folder_id, page, limit))


@api.route("/files/<int:file_id>")
@login_required
def get_file(file_id):
    return jsonify(get_services().files.get(current_user.id, file_id).to_dict())


@api.route("/files/<int:file_id>", methods=["PATCH"])
@login_required
def update_file(file_id):
    data = _body()
    changes = {"name": data.get("name")}
    # An explicit null folderId moves the file to the root.
    if "folderId" in data:
        changes["folder_id"] = _int(data["folderId"], "folderId")
    file = get_services().files.update(current_user.id, file_id, **changes)
    return jsonify(file.to_dict())


@api.route("/files/<int:file_id>", methods=["DELETE"])
@login_required
def trash_file(file_id):
    return jsonify(get_services().trash.trash_file(current_user.id, file_id).to_dict())


@api.route("/files/<int:file_id>/download")
@login_required
def download_file(file_id):
    return jsonify(get_services().files.download_url(current_user.id, file_id))


@api.route("/files/<int:file_id>/restore", methods=["POST"])
@login_required
def restore_file(file_id):
    return jsonify(get_services().trash.restore_file(current_user.id, file_id).to_dict())


# Folders


@api.route("/folders", methods=["POST"])
@login_required
def create_folder():
    data = _body()
    folder = get_services().folders.create(
        current_user.id, data.get("name"), _int(data.get("parentId"), "parentId")
    )
    return jsonify(folder.to_dict()), 201


@api.route("/folders")
@login_required
def list_root():
    page, limit = _page_args(50)
    return jsonify(get_services().folders.list_children(current_user.id, None, page, limit))


@api.route("/folders/<int:folder_id>")
@login_required
def get_folder(folder_id):
    return jsonify(get_services().folders.get(current_user.id, folder_id).to_dict())


@api.route("/folders/<int:folder_id>", methods=["PATCH"])
@login_required
def update_folder(folder_id):
    data = _body()
    changes = {}
    if "parentId" in data:
        changes["parent_id"] = _int(data["parentId"], "parentId")
    if data.get("name") is not None:
        changes["name"] = data["name"]
    if not changes:
        raise InvalidRequest("Nothing to update")
    folder = get_services().folders.update(current_user.id, folder_id, **changes)
    return jsonify(folder.to_dict())


@api.route("/folders/<int:folder_id>", methods=["DELETE"])
@login_required
def trash_folder(folder_id):
    return jsonify(get_services().trash.trash_folder(current_user.id, folder_id))


@api.route("/folders/<int:folder_id>/children")
@login_required
def folder_children(folder_id):
    page, limit = _page_args(50)
    return jsonify(get_services().folders.list_children(current_user.id, folder_id, page, limit))


@api.route("/folders/<int:folder_id>/breadcrumbs")
@login_required
def folder_breadcrumbs(folder_id):
    trail = get_services().folders.breadcrumbs(current_user.id, folder_id)
    return jsonify([{"id": f.id, "name": f.name} for f in trail])


@api.route("/folders/<int:folder_id>/restore", methods=["POST"])
@login_required
def restore_folder(folder_id):
    return jsonify(get_services().trash.restore_folder(current_user.id, folder_id))


# Trash


@api.route("/trash")
@login_required
def list_trash():
    return jsonify(get_services().trash.list_trash(current_user.id))


@api.route("/trash", methods=["DELETE"])
@login_required
def empty_trash():
    return jsonify(get_services().trash.empty_trash(current_user.id))


# Shares


@api.route("/shares", methods=["POST"])
@login_required
def create_share():
    data = _body()
    share = get_services().shares.create(
        current_user.id,
        file_id=_int(data.get("fileId"), "fileId"),
        folder_id=_int(data.get("folderId"), "folderId"),
        password=data.get("password"),
        expires_at=_timestamp(data.get("expiresAt"), "expiresAt"),
        max_downloads=_int(data.get("maxDownloads"), "maxDownloads"),
    )
    return jsonify(share.to_dict()), 201


@api.route("/shares")
@login_required
def list_shares():
    return jsonify(get_services().shares.list_shares(current_user.id))


@api.route("/shares/<share_id>", methods=["DELETE"])
@login_required
def delete_share(share_id):
    get_services().shares.delete_share(current_user.id, share_id)
    return jsonify({"success": True})


@api.route("/s/<share_id>")
def resolve_share(share_id):
    return jsonify(get_services().shares.resolve(share_id))


@api.route("/s/<share_id>/download", methods=["POST"])
def download_share(share_id):
    return jsonify(get_services().shares.download(share_id, _body().get("password")))


# Internal


@internal.route("/scan-result", methods=["POST"])
@require_api_secret
def ingest_scan_result():
    data = _body()
    file_id = _int(data.get("fileId"), "fileId", required=True)
    status = get_services().pipeline.apply_verdict(
        file_id,
        bool(data.get("infected")),
        data.get("virusName"),
        _int(data.get("scanTimeMs"), "scanTimeMs") or 0,
    )
    if status is None:
        raise NotFound("File not found")
    return jsonify({"success": True, "scanStatus": status.value})


@internal.route("/download-url", methods=["POST"])
@require_api_secret
def internal_download_url():
    data = _body()
    key = data.get("key")
    if not key:
        raise InvalidRequest("key is required")
    url = get_services().store.presign_download_url(key, ttl=_int(data.get("ttl"), "ttl"))
    return jsonify({"url": url})


@internal.route("/shares/purge-expired", methods=["POST"])
@require_api_secret
def internal_purge_shares():
    return jsonify({"count": purge_expired_shares(get_services())})


@internal.route("/quota/reconcile", methods=["POST"])
@require_api_secret
def internal_reconcile_all():
    return jsonify({"count": reconcile_all_quotas(get_services())})


@internal.route("/quota/reconcile/<int:account_id>", methods=["POST"])
@require_api_secret
def internal_reconcile_one(account_id):
    return jsonify({"usedBytes": reconcile_quota(get_services(), account_id)})


@internal.route("/trash/purge", methods=["POST"])
@require_api_secret
def internal_purge_trash():
    return jsonify(purge_old_trash(get_services()) or {"success": False})


@internal.route("/uploads/reap", methods=["POST"])
@require_api_secret
def internal_reap_uploads():
    return jsonify({"count": reap_stale_uploads(get_services())})


@internal.route("/scan-jobs/requeue", methods=["POST"])
@require_api_secret
def internal_requeue_dead_scans():
    job_id = _int(_body().get("jobId"), "jobId")
    return jsonify({"count": get_services().queue.requeue_dead(job_id)})


if __name__ == "__main__":
    create_app().run(debug=True, host="0.0.0.0", port=5000)
