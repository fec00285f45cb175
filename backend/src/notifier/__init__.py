from backend.src.notifier.apns_sender import ApnsPushSender
from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.notifier.fcm_sender import FcmPushSender
from backend.src.notifier.registry import PushSenderRegistry
from backend.src.notifier.web_push_sender import WebPushSender

__all__ = [
    "ApnsPushSender",
    "FcmPushSender",
    "NotificationDispatcher",
    "PushSenderRegistry",
    "WebPushSender",
]
