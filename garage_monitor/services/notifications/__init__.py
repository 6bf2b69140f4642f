"""
Notifications

Side-effecting activities invoked by the door monitor workflow.
"""

from .sms import send_text_message

__all__ = ["send_text_message"]
