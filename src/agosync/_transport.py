"""HTTP transport for the AGO's control surface."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from agosync import ago_format
from agosync._constants import (
    CUSTOM_PROGRAMS_PATH,
    DEFAULT_HTTP_TIMEOUT_S,
    DEFAULT_PROBE_TIMEOUT_S,
    DEFAULT_UPLOAD_ENDPOINT,
)
from agosync._redact import redact_for_log
from agosync.exceptions import AgoDeviceCommandError, AgoTransportError
from agosync.models.device import DeviceProgram, UploadResult

_logger = logging.getLogger(__name__)

_SNIPPET = 180


class DeviceProbe(Protocol):
    """Reachability probe. Never raises; failures collapse to ``False``."""

    async def probe(self, ip: str) -> bool:
        ...


class DeviceApi(DeviceProbe, Protocol):
    """Structural interface of the AGO file API.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (:class:`AgoTransport`) concrete.
    """

    async def list_programs(self, ip: str) -> list[DeviceProgram]:
        ...

    async def delete_program(self, ip: str, filename: str) -> str:
        ...

    async def upload_program(
        self,
        ip: str,
        *,
        endpoint: str,
        field_name: str,
        filename: str,
        content: str,
        metadata: ago_format.UploadMetadata,
    ) -> UploadResult:
        ...


def normalize_url(ip: str, endpoint: str) -> str:
    """Resolve *endpoint* (absolute URL or path) against the device at *ip*."""
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    if endpoint.startswith("/"):
        return f"http://{ip}{endpoint}"
    return f"http://{ip}/{endpoint}"


def looks_like_html(body: str) -> bool:
    """The firmware answers unknown routes with its SPA index page."""
    lower = body.strip().lower()
    return "<!doctype html" in lower or "<html" in lower


def parse_program_listing(payload: Any) -> list[DeviceProgram]:
    """Normalize the device's file listing into :class:`DeviceProgram` items.

    Accepts a bare list of filenames, a list of objects, or an object that
    wraps either under ``files`` / ``programs``.
    """
    if isinstance(payload, Mapping):
        for key in ("files", "programs", "items"):
            inner = payload.get(key)
            if isinstance(inner, list):
                payload = inner
                break
        else:
            return []
    if not isinstance(payload, list):
        return []

    programs: list[DeviceProgram] = []
    for item in payload:
        if isinstance(item, str):
            filename = item.strip()
            display = filename
        elif isinstance(item, Mapping):
            filename = str(item.get("filename") or item.get("file") or item.get("name") or "").strip()
            display = str(item.get("display_name") or item.get("title") or item.get("name") or filename).strip()
        else:
            continue
        if not filename:
            continue
        programs.append(DeviceProgram(filename=filename, display_name=display or filename))
    return programs


class AgoTransport:
    """aiohttp-backed implementation of :class:`DeviceApi`."""

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        *,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_S,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT_S,
    ) -> None:
        self._http = http_session
        self._probe_timeout = aiohttp.ClientTimeout(total=probe_timeout)
        self._timeout = aiohttp.ClientTimeout(total=http_timeout)

    @staticmethod
    def _headers(ip: str, *, content_type: str | None = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json, text/plain, */*",
            "Origin": f"http://{ip}",
            "Referer": f"http://{ip}/programs",
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    async def probe(self, ip: str) -> bool:
        url = f"http://{ip}"
        try:
            async with self._http.get(url, timeout=self._probe_timeout) as resp:
                return 200 <= resp.status < 300
        except (aiohttp.ClientError, TimeoutError, OSError) as exc:
            _logger.debug("Probe %s failed: %s", url, exc)
            return False

    async def list_programs(self, ip: str) -> list[DeviceProgram]:
        url = normalize_url(ip, CUSTOM_PROGRAMS_PATH)
        _logger.debug("GET %s", url)
        try:
            async with self._http.get(url, headers=self._headers(ip), timeout=self._timeout) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise AgoTransportError(f"Failed to reach AGO: {exc}", endpoint=CUSTOM_PROGRAMS_PATH) from exc

        if not 200 <= status < 300 or looks_like_html(text):
            raise AgoDeviceCommandError(
                f"AGO returned HTTP {status} when listing programs: {text[:_SNIPPET]}",
                status_code=status,
                endpoint=CUSTOM_PROGRAMS_PATH,
            )
        try:
            payload = json.loads(text) if text.strip() else []
        except json.JSONDecodeError as exc:
            raise AgoDeviceCommandError(
                f"Invalid JSON from program listing: {text[:_SNIPPET]}",
                status_code=status,
                endpoint=CUSTOM_PROGRAMS_PATH,
            ) from exc
        return parse_program_listing(payload)

    async def delete_program(self, ip: str, filename: str) -> str:
        endpoint = f"{CUSTOM_PROGRAMS_PATH}/{filename}"
        url = normalize_url(ip, endpoint)
        _logger.debug("DELETE %s", url)
        try:
            async with self._http.delete(url, headers=self._headers(ip), timeout=self._timeout) as resp:
                status = resp.status
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise AgoTransportError(f"Failed to reach AGO: {exc}", endpoint=endpoint) from exc

        if 200 <= status < 300:
            return f"Deleted {filename}"
        raise AgoDeviceCommandError(
            f"AGO returned HTTP {status} when deleting {filename}",
            status_code=status,
            endpoint=endpoint,
        )

    async def _attempt(
        self,
        method: str,
        url: str,
        attempts: list[str],
        **kwargs: Any,
    ) -> bool:
        """Send one upload attempt; record a failure line and return ``False`` on error."""
        try:
            async with self._http.request(method, url, timeout=self._timeout, **kwargs) as resp:
                status = resp.status
                body = await resp.text()
        except (aiohttp.ClientError, TimeoutError) as exc:
            attempts.append(f"{method} {url} -> {exc}")
            return False
        if 200 <= status < 300 and not looks_like_html(body):
            _logger.debug("%s %s -> HTTP %s", method, url, status)
            return True
        attempts.append(f"{method} {url} -> HTTP {status} ({body[:_SNIPPET]})")
        return False

    async def upload_program(
        self,
        ip: str,
        *,
        endpoint: str,
        field_name: str,
        filename: str,
        content: str,
        metadata: ago_format.UploadMetadata,
    ) -> UploadResult:
        """Upload *content* (exchange-format JSON) as a custom program.

        Tries ``POST`` then ``PUT`` on the custom-programs resource path;
        when *endpoint* overrides the default, a multipart ``POST`` to that
        endpoint using *field_name* is tried last.
        """
        try:
            payload = ago_format.build_custom_program_payload(content, filename, metadata)
        except ValueError as exc:
            raise AgoDeviceCommandError(str(exc), endpoint=CUSTOM_PROGRAMS_PATH) from exc

        payload_text = json.dumps(payload, separators=(",", ":"))
        device_filename = ago_format.build_custom_program_filename()
        custom_url = normalize_url(ip, f"{CUSTOM_PROGRAMS_PATH}/{device_filename}")
        _logger.debug("Upload %s -> %s payload=%s", filename, custom_url, redact_for_log(payload, max_string=360))

        attempts: list[str] = []
        json_headers = self._headers(ip, content_type="application/json")

        if await self._attempt("POST", custom_url, attempts, data=payload_text, headers=json_headers):
            return UploadResult(
                message=f"Uploaded {filename} to AGO as {device_filename} via API",
                device_filename=device_filename,
            )

        # Some firmware variants only write by direct resource path.
        if await self._attempt("PUT", custom_url, attempts, data=payload_text, headers=json_headers):
            return UploadResult(
                message=f"Uploaded {filename} to AGO as {device_filename} via API (PUT)",
                device_filename=device_filename,
            )

        override = endpoint.strip()
        if override and override != DEFAULT_UPLOAD_ENDPOINT:
            legacy_url = normalize_url(ip, override)
            form = aiohttp.FormData()
            form.add_field(
                field_name or "file",
                payload_text,
                filename=filename,
                content_type="application/json",
            )
            if await self._attempt("POST", legacy_url, attempts, data=form, headers=self._headers(ip)):
                return UploadResult(
                    message=f"Uploaded {filename} via compatibility endpoint {legacy_url}",
                    device_filename=device_filename,
                )

        raise AgoDeviceCommandError(
            f"Upload failed. Tried: {'; '.join(attempts)}",
            endpoint=CUSTOM_PROGRAMS_PATH,
        )
