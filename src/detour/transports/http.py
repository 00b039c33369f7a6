"""HTTP loader backed by requests.

Brief:
  Default :class:`detour.interfaces.Loader` implementation. Each probe is a
  streamed GET through a shared ``requests.Session`` run in a worker thread so
  the event loop keeps scheduling other probes while it waits.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from ..errors import ProbeError, ProbeTimeout
from ..interfaces import LoadResult

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "detour/0.1"


class HttpLoader:
    """Probe a reference with an HTTP GET.

    Inputs (constructor):
        session: Optional pre-built requests.Session (tests inject one).
        user_agent: User-Agent header sent with each probe.
        max_bytes: Most body bytes read when no Content-Length is sent.
        verify: TLS verification flag passed to requests.
        session_kwargs: Extra attributes applied to a new session.

    Outputs:
        HttpLoader instance.

    Notes:
        - Status codes >= 400 raise ProbeError; requests timeouts raise
          ProbeTimeout; every other requests failure raises ProbeError.
        - The returned size is the Content-Length when present, otherwise the
          number of body bytes read (capped at max_bytes).
        - A cancelled load() returns only after its worker thread has finished.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        max_bytes: int = 64 * 1024,
        verify: bool = True,
        session_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._session = session or requests.Session()
        for key, value in (session_kwargs or {}).items():
            setattr(self._session, key, value)
        self._headers = {"User-Agent": str(user_agent)}
        self.max_bytes = max(1, int(max_bytes))
        self.verify = bool(verify)

    def _fetch(self, url: str, timeout: float) -> LoadResult:
        try:
            resp = self._session.get(
                url,
                headers=self._headers,
                timeout=timeout,
                stream=True,
                allow_redirects=True,
                verify=self.verify,
            )
        except requests.Timeout as exc:
            raise ProbeTimeout(str(exc)) from exc
        except requests.RequestException as exc:
            raise ProbeError(str(exc)) from exc

        try:
            if resp.status_code >= 400:
                raise ProbeError(f"HTTP {resp.status_code} for {url}")
            length = resp.headers.get("Content-Length")
            if length is not None and str(length).isdigit():
                return LoadResult(size=int(length), status=resp.status_code)
            size = 0
            for chunk in resp.iter_content(chunk_size=8192):
                size += len(chunk)
                if size >= self.max_bytes:
                    break
            return LoadResult(size=min(size, self.max_bytes), status=resp.status_code)
        except requests.Timeout as exc:
            raise ProbeTimeout(str(exc)) from exc
        except requests.RequestException as exc:
            raise ProbeError(str(exc)) from exc
        finally:
            resp.close()

    async def load(self, url: str, timeout: float) -> LoadResult:
        fetch = asyncio.ensure_future(asyncio.to_thread(self._fetch, url, timeout))
        try:
            return await asyncio.shield(fetch)
        except asyncio.CancelledError:
            # A worker thread cannot be interrupted; stay busy until it ends.
            while not fetch.done():
                try:
                    await asyncio.wait({fetch})
                except asyncio.CancelledError:
                    continue
            if not fetch.cancelled():
                # Marks the exception retrieved.
                fetch.exception()
            raise

    def close(self) -> None:
        """Close the underlying HTTP session."""
        try:
            self._session.close()
        except Exception:  # pragma: no cover
            logger.exception("Error while closing HttpLoader session")
