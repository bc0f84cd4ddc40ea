"""
Celery configuration for the fees ledger.

Celery runs the scheduled late-payment penalty sweep (fees.tasks). Redis is
both the message broker and the result backend, and the beat schedule lives
in the database through django-celery-beat.

Usage:
    celery -A config worker -l info
    celery -A config beat -l info
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Looks for a tasks.py module in each installed app
app.autodiscover_tasks()
