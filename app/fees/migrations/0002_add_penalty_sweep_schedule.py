"""
Add celery-beat schedule for the late-payment penalty sweep.

Runs fees.tasks.apply_late_payment_penalties once a day at 01:00.
"""

from django.db import migrations

TASK_NAME = "Apply Late Payment Penalties"


def create_periodic_task(apps, schema_editor):
    CrontabSchedule = apps.get_model("django_celery_beat", "CrontabSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="1",
        day_of_week="*",
        day_of_month="*",
        month_of_year="*",
    )

    PeriodicTask.objects.get_or_create(
        name=TASK_NAME,
        defaults={
            "task": "fees.tasks.apply_late_payment_penalties",
            "crontab": schedule,
            "enabled": True,
            "description": (
                "Charges overdue posted invoices under every active auto-apply "
                "penalty rule, one institution at a time."
            ),
        },
    )


def remove_periodic_task(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name=TASK_NAME).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("fees", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]
