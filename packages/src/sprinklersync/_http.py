"""HTTP transport port and aiohttp adapter.

The controller speaks a GET-only JSON protocol::

    GET /ja?pw=<password>                    full status
    GET /<verb>?k=v&...&pw=<password>        commands (cm, mp, cs, cp, cv)

:class:`TransportPort` is what the engine depends on; :class:`HttpTransport`
is the aiohttp implementation.  Network failures and timeouts surface as
:class:`~sprinklersync._errors.TransportError`, non-JSON bodies as
:class:`~sprinklersync._errors.DecodeError`.  Result codes are *not*
interpreted here.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

import aiohttp

from sprinklersync._errors import DecodeError, TransportError

logger = logging.getLogger(__name__)

STATUS_VERB = "ja"


@runtime_checkable
class TransportPort(Protocol):
    """Request/response access to the controller."""

    async def fetch(
        self,
        verb: str,
        params: Mapping[str, object] | None = None,
    ) -> dict[str, Any]:
        """Issue ``GET /<verb>`` and return the decoded JSON object."""
        ...


def base_url(host: str) -> str:
    """Normalise a configured host into a base URL without trailing slash."""
    host = host.strip().rstrip("/")
    if host.startswith(("http://", "https://")):
        return host
    return f"http://{host}"


def query_params(params: Mapping[str, object] | None, password: str) -> dict[str, str]:
    """Render command parameters as query strings, password last.

    Booleans become ``1``/``0``, which is what the firmware expects.
    """
    rendered: dict[str, str] = {}
    for key, value in (params or {}).items():
        if isinstance(value, bool):
            rendered[key] = "1" if value else "0"
        else:
            rendered[key] = str(value)
    rendered["pw"] = password
    return rendered


class HttpTransport:
    """aiohttp-backed :class:`TransportPort`.

    The session is created lazily on first use and closed by
    :meth:`close`.  A caller-supplied session is never closed here.

    Args:
        host: Controller host, optionally with scheme and port.
        password: Value sent as ``pw``.
        timeout: Total per-request timeout in seconds.
        session: Optional externally managed :class:`aiohttp.ClientSession`.
    """

    def __init__(
        self,
        *,
        host: str,
        password: str,
        timeout: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url(host)
        self._password = password
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def fetch(
        self,
        verb: str,
        params: Mapping[str, object] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{verb}"
        query = query_params(params, self._password)
        logger.debug("GET %s %s", url, {k: v for k, v in query.items() if k != "pw"})
        session = self._ensure_session()
        try:
            async with session.get(url, params=query, timeout=self._timeout) as resp:
                resp.raise_for_status()
                body = await resp.json(content_type=None)
        except aiohttp.ClientResponseError as exc:
            msg = f"'{verb}' failed with HTTP {exc.status}"
            raise TransportError(msg) from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            msg = f"'{verb}' request failed: {exc!r}"
            raise TransportError(msg) from exc
        except ValueError as exc:
            msg = f"'{verb}' returned malformed JSON"
            raise DecodeError(msg) from exc

        if not isinstance(body, dict):
            msg = f"'{verb}' returned {type(body).__name__}, expected an object"
            raise DecodeError(msg)
        return body

    async def close(self) -> None:
        """Close the owned session.  Idempotent."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


async def close_transport(transport: TransportPort) -> None:
    """Close *transport* if it has an async ``close()``."""
    close = getattr(transport, "close", None)
    if close is None:
        return
    result = close()
    if asyncio.iscoroutine(result):
        await result
