"""Email templates for the communications worker."""

from services.communications_service.templates.store import TEMPLATES, render

__all__ = ["TEMPLATES", "render"]
