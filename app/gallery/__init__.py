import logging
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import Engine

from app.gallery.auth import SessionIdentity, bp as auth_bp, load_current_user
from app.gallery.config import load_config
from app.gallery.db import init_db, teardown_db_session
from app.gallery.errors import E, register_error_handlers
from app.gallery.logging_config import configure_logging
from app.gallery.modules.categories.admin import bp as categories_bp
from app.gallery.modules.design_groups.admin import bp as design_groups_bp
from app.gallery.modules.hierarchy.admin import bp as hierarchy_bp
from app.gallery.modules.schematics.admin import bp as schematics_bp
from app.gallery.modules.submissions.admin import bp as submissions_bp
from app.gallery.routes import bp as routes_bp
from app.gallery.storage import S3Storage, storage_from_config

# Tables and columns the code cannot run without.
REQUIRED_SCHEMA = {
    "users": ("role", "troupe_id", "force_password_change"),
    "user_district_access": ("user_id", "district_id"),
    "troupes": ("group_id",),
    "picture_sets": ("status", "classified_at", "approved_at", "view_count"),
    "pictures": ("display_order", "design_group_id"),
    "design_groups": ("primary_picture_id", "created_by_id"),
    "categories": ("parent_id", "is_schematic_enabled"),
}


def missing_schema(engine: Engine) -> list[str]:
    """Entries of REQUIRED_SCHEMA absent from the live database, as ``table.column``."""
    missing: list[str] = []
    insp = sa_inspect(engine)
    for table, columns in REQUIRED_SCHEMA.items():
        if not insp.has_table(table):
            missing.append(f"{table} (table)")
            continue
        present = {c["name"] for c in insp.get_columns(table)}
        missing.extend(f"{table}.{col}" for col in columns if col not in present)
    return missing


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    configure_logging(app)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Collaborators. Tests swap these for fakes after create_app().
    app.extensions["gallery_identity"] = SessionIdentity()
    app.extensions["gallery_storage"] = storage_from_config(app.config)

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from botocore.exceptions import BotoCoreError, ClientError

            storage = app.extensions["gallery_storage"]
            try:
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except (BotoCoreError, ClientError) as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    register_error_handlers(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(hierarchy_bp)
    app.register_blueprint(categories_bp)
    app.register_blueprint(submissions_bp)
    app.register_blueprint(design_groups_bp)
    app.register_blueprint(schematics_bp)

    # Schema health: detect drift between code expectations and the DB.
    app.config.setdefault("_schema_health_ok", False)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> bool:
        missing = missing_schema(app.extensions["sqlalchemy_engine"])
        if missing and missing != app.config["_schema_health_missing"]:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        return not missing

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok") or request.path.startswith(("/health", "/healthz")):
            return None
        # Re-check until the schema shows up (migrations may run after boot).
        if _run_schema_health_check():
            return None
        return jsonify({"error": "Database schema out of date", "code": E.DATABASE_UNAVAILABLE}), 503

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
