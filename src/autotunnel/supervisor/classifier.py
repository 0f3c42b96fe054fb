"""Map free-text transport failures onto an ErrorClass."""

from ..common.utils import describe_exception
from .models import ErrorClass

# First match wins; "network" must lose to "host key" and friends
_RULES: tuple[tuple[ErrorClass, tuple[str, ...]], ...] = (
    (ErrorClass.AUTH, ("auth", "permission denied")),
    (ErrorClass.HOSTKEY, ("host key", "known_hosts")),
    (ErrorClass.DNS, ("unknown host", "name or service", "unresolved")),
    (ErrorClass.REFUSED, ("refused",)),
    (ErrorClass.TIMEOUT, ("timed out", "timeout")),
    (ErrorClass.NETWORK, ("network", "route")),
)


def classify(message: str | None) -> ErrorClass:
    """Classify a failure message.

    Args:
        message: Failure text from the transport, or None

    Returns:
        The first matching class, or ``ErrorClass.UNKNOWN``
    """
    if not message:
        return ErrorClass.UNKNOWN
    text = message.lower()
    for error_class, needles in _RULES:
        if any(needle in text for needle in needles):
            return error_class
    return ErrorClass.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorClass:
    """Classify an exception by its message, falling back to its type name."""
    return classify(describe_exception(exc))
