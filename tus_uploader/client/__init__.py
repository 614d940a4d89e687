"""TUS protocol client implementations."""

from tus_uploader.client.events import (
    ErrorEvent,
    EventRouter,
    ProgressEvent,
    SubscriptionSet,
    SuccessEvent,
    default_router,
)
from tus_uploader.client.retry import RetryPolicy
from tus_uploader.client.session import SessionState, UploadSession
from tus_uploader.client.stats import UploadStats
from tus_uploader.client.transport import HttpTransport, Transport
from tus_uploader.client.upload import Upload

__all__ = [
    "Upload",
    "UploadSession",
    "SessionState",
    "EventRouter",
    "SubscriptionSet",
    "ProgressEvent",
    "SuccessEvent",
    "ErrorEvent",
    "default_router",
    "RetryPolicy",
    "UploadStats",
    "Transport",
    "HttpTransport",
]
