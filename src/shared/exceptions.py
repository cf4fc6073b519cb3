"""
Pipeline Error Taxonomy

ERROR CLASSES AND HOW EACH STAGE TREATS THEM:
┌──────────────────────┬──────────────────────────────────────────────────┐
│ UpstreamUnavailable  │ Caught at the HTTP call, logged, "no data"       │
│ MalformedMessage     │ Payload undecodable: logged and dropped          │
│ ProcessingFailure    │ Per-message failure: retry / dead-letter policy  │
│ LockContention       │ Message claimed by another worker: deferred      │
│ PublishError         │ Broker did not confirm delivery                  │
│ BrokerUnavailable    │ Fatal: aborts the current consumer run           │
│ StorageUnavailable   │ Fatal: aborts the current consumer run           │
└──────────────────────┴──────────────────────────────────────────────────┘
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all order sync pipeline errors."""


class UpstreamUnavailable(PipelineError):
    """Upstream order API returned a non-success status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedMessage(PipelineError):
    """Queue payload could not be decoded into a usable order message."""


class ProcessingFailure(PipelineError):
    """Resolving or persisting one order failed; subject to the retry policy."""

    def __init__(self, message: str, order_number: Optional[str] = None):
        super().__init__(message)
        self.order_number = order_number


class LockContention(PipelineError):
    """Message is already locked by another consumer worker."""

    def __init__(self, message_code: str, consumer_name: str):
        super().__init__(f"Message {message_code} is locked by consumer {consumer_name}")
        self.message_code = message_code
        self.consumer_name = consumer_name


class PublishError(PipelineError):
    """Broker rejected a message or did not confirm delivery in time."""

    def __init__(self, message: str, topic: Optional[str] = None):
        super().__init__(message)
        self.topic = topic


class BrokerUnavailable(PipelineError):
    """Unrecoverable broker connection loss."""


class StorageUnavailable(PipelineError):
    """Unrecoverable storage connection loss."""
