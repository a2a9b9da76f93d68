"""
Celery tasks package.

Tasks are organized by domain:
- messaging_tasks: Outbound WhatsApp messages
- verification_tasks: Cleanup of expired verification codes
"""

from app.tasks import messaging_tasks, verification_tasks

__all__ = ["messaging_tasks", "verification_tasks"]
