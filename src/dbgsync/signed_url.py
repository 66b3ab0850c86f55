from __future__ import annotations

import logging
import urllib.error
import urllib.request
from typing import BinaryIO, Callable

from dbgsync.cancellation import check_cancelled
from dbgsync.exceptions import ProtocolError

logger = logging.getLogger(__name__)

_PUT_TIMEOUT_SECONDS = 300


def upload_via_signed_url(
    url: str,
    reader: BinaryIO,
    size: int,
    *,
    urlopen_fn: Callable[..., object] = urllib.request.urlopen,
    timeout: float = _PUT_TIMEOUT_SECONDS,
) -> int:
    """PUT the remaining content of ``reader`` to a one-time URL.

    Any 2xx status is success; everything else is a ``ProtocolError``.
    Returns the status code.
    """
    check_cancelled()
    request = urllib.request.Request(
        url,
        data=reader,
        method="PUT",
        headers={
            "Content-Length": str(size),
            "Content-Type": "application/octet-stream",
        },
    )
    try:
        with urlopen_fn(request, timeout=timeout) as response:
            status = int(getattr(response, "status", 0) or response.getcode())
    except urllib.error.HTTPError as exc:
        raise ProtocolError(f"unexpected status code: {exc.code}, msg: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise ProtocolError(f"do upload request: {exc.reason}") from exc
    if not 200 <= status < 300:
        raise ProtocolError(f"unexpected status code: {status}")
    logger.debug("signed URL upload finished with status %d", status)
    return status
