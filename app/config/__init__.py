# =============================================================================
# Django Project Configuration Package
# =============================================================================
# Settings, URLs, ASGI/WSGI applications and the Celery app.
#
# The Celery app is imported here so it is loaded when Django starts and
# shared tasks bind to it.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
