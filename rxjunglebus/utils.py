"""Utility helpers used across ``rxjunglebus`` modules."""

import base64
import inspect
import traceback
from typing import Any, Callable


def get_short_error_info(e: Exception) -> str:
    """
    Get a short error information from an exception.

    Args:
        e (Exception): The exception to get the error information from.

    Returns:
        str: A short error information.
    """
    return f"{type(e).__name__}: {str(e)}"


# the function to get the full error information from an exception.
def get_full_error_info(e: Exception) -> str:
    """
    Get the full error information from an exception.

    Args:
        e (Exception): The exception to get the error information from.

    Returns:
        str: The full error information.
    """
    return "".join(traceback.format_exception(type(e), e, e.__traceback__))


def bytes_to_hex(data: bytes | bytearray | None) -> str:
    """Render bytes as a lower-case hex string with no separators.

    ``None`` and empty input both yield ``""``.
    """
    if not data:
        return ""
    return bytes(data).hex()


def base64_to_hex(value: str | None) -> str:
    """Transcode a base64 string to lower-case hex.

    Missing or empty values yield ``""``. Invalid base64 raises
    :class:`binascii.Error`.
    """
    if not value:
        return ""
    return base64.b64decode(value, validate=True).hex()


async def invoke_callback(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable.

    Lets consumers register plain functions or coroutine functions
    interchangeably.
    """
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result
