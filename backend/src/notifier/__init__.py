from backend.src.notifier.web_push_notifier import WebPushTransport, classify_failure

__all__ = [
    "WebPushTransport",
    "classify_failure",
]
