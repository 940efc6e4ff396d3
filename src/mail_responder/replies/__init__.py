"""Reply composition and explicit send actions."""

from .composer import build_reply_subject, build_thread_info
from .outbound import notify_pairing_approved, send_message

__all__ = [
    "build_reply_subject",
    "build_thread_info",
    "notify_pairing_approved",
    "send_message",
]
