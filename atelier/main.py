"""Atelier main entry point.

Starts the FastAPI web server that hosts runs and the change review endpoints.
"""

from __future__ import annotations

import uvicorn

from atelier.core.config import get_settings
from atelier.core.logging import get_logger, setup_logging


def main():
    """Entry point: configure logging and serve the web app."""
    setup_logging()
    logger = get_logger("main")
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("Atelier starting")
    logger.info("=" * 60)

    if not settings.target_project_path:
        logger.warning("TARGET_PROJECT_PATH not set - you'll need to specify a project per request")

    for role, model in (
        ("coordinator", settings.coordinator_model),
        ("executor", settings.executor_model),
        ("verifier", settings.verifier_model),
        ("chat", settings.chat_model),
    ):
        logger.info("Model for %s: %s", role, model)

    if not settings.openai_api_key.strip():
        logger.warning("OPENAI_API_KEY not set - OpenAI-backed roles will fail")

    if not settings.anthropic_api_key.strip():
        logger.warning("ANTHROPIC_API_KEY not set - Anthropic-backed roles will fail")

    logger.info("Verification policy: %s", settings.verification_policy)
    logger.info("Web UI: http://%s:%d", settings.web_host, settings.web_port)

    try:
        uvicorn.run(
            "atelier.web.server:app",
            host=settings.web_host,
            port=settings.web_port,
            log_level=settings.log_level.lower(),
            reload=False,
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
