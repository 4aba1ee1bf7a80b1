#burnin/app/__init__.py


from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from flask import Flask

from burnin.app.settings import load_settings, store_settings
from burnin.utils.logs import logger, set_level

if TYPE_CHECKING:
    from burnin.services.engine_runtime import EngineRuntime


def create_app(config_name: str | None = None, runtime: Optional[EngineRuntime] = None) -> Flask:
    """Build the HTTP surface around an engine runtime.

    When ``runtime`` is omitted a fresh one is created from the settings and
    the configuration file named by ``BURNIN_CONFIG`` (if any); starting its
    loop is left to the caller.
    """

    from burnin.services.engine_runtime import EngineRuntime, register_runtime

    logger.process("Creating app")
    settings = load_settings(config_name)
    set_level(settings.log_level)
    app = Flask(__name__)
    app.config.update(settings.as_flask_config())
    app.debug = settings.debug
    app.testing = settings.testing
    store_settings(app, settings)
    logger.info("app created (environment=%s)", settings.environment)

    if runtime is None:
        runtime = EngineRuntime(settings)
        if settings.config_file:
            logger.process("Loading configuration from %s", settings.config_file)
            runtime.repository.load_file(settings.config_file)
    register_runtime(app, runtime)

    register_blueprints(app)
    return app


def register_blueprints(app: Flask) -> None:
    from burnin.app.routes.api import api_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    logger.info("API registered")


__all__ = ["create_app", "register_blueprints"]
