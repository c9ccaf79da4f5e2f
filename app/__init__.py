from __future__ import annotations

import json
import logging
import os

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from app.core.auth import auth_bp
from app.core.config import Config
from app.core.extensions import db, login_manager, migrate
from app.core.models import User, seed_demo_data
from app.registrations import registrations_bp
from app.registrations import services as registration_services
from app.registrations.errors import RegistrationError


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    if not app.config.get("UPLOAD_FOLDER"):
        app.config["UPLOAD_FOLDER"] = os.path.join(app.instance_path, "uploads")
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    registration_services.init_app(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(registrations_bp)

    register_cli(app)
    register_error_handlers(app)
    return app


def configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.getLogger("app").setLevel(level)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(RegistrationError)
    def registration_error(exc: RegistrationError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def http_error(exc: HTTPException):
        return jsonify({"error": exc.name.lower().replace(" ", "-"), "message": exc.description}), exc.code


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed demo users and packages."""
        if reset:
            db.drop_all()
            db.create_all()
        if not User.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing users found.")

    @app.cli.command("registration-show")
    @click.option("--id", "case_id", type=str, required=True, help="Registration id.")
    def registration_show(case_id: str) -> None:
        """Print a stored registration as JSON."""
        try:
            case = app.extensions["registration_store"].load(case_id)
        except RegistrationError as exc:
            raise click.ClickException(exc.message) from exc
        click.echo(json.dumps(case.to_dict(), indent=2, ensure_ascii=False))


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))
