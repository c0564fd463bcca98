"""Exceptions raised at the edges of the event queue."""


class WebhookError(Exception):
    """Base class for inbound notification errors."""


class InvalidSignatureError(WebhookError):
    """The HMAC signature is missing or does not match the raw body."""


class MalformedEventError(WebhookError):
    """The notification cannot be turned into an event (bad JSON, missing fields, unknown group)."""


class HandlerError(Exception):
    """A handler failed in a way that may succeed on a later attempt."""


class PermanentHandlerError(HandlerError):
    """
    A handler hit an unrecoverable data error.

    The event is failed immediately; further automatic attempts are skipped.
    """
