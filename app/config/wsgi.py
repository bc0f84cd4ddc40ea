"""
WSGI config for the fees ledger.

Provided as a fallback for traditional deployments; exposes the WSGI
callable as a module-level variable named `application`.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
