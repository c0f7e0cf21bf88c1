"""
HTTP provider transport

Thin aiohttp adapter to a REST generation provider:

    POST {base}/jobs        {"kind", "prompt" | "image_url", "result_format", "enable_pbr",
                             ["face_count"], ["generate_type"]}
                            -> {"job_id": "..."}
    GET  {base}/jobs/{id}   -> {"status": "WAIT|RUN|DONE|SUCCESS|FAILED",
                                "result_files": [{"type", "url", "preview_image_url"}],
                                "thumbnail_url", "error_message"}
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional

import aiohttp

from ...config import load_config
from ...exceptions import ConfigurationError, GatewayPollError, GatewaySubmitError
from ...utils.logging import get_logger
from ..gateway import ProviderGateway, map_provider_status
from ..types import GenerationOptions, InputKind, ProviderJobStatus, ResultFile

logger = get_logger(__name__)


def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None


async def _error_message(resp: aiohttp.ClientResponse) -> str:
    if resp.content_type == "application/json":
        try:
            data = await resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or "Unknown API error")
    text = await resp.text()
    return text[:200] or "Unknown API error"


class HttpProviderGateway(ProviderGateway):
    """aiohttp transport; one ClientSession reused across calls."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or load_config()
        self.base_url = (self.config.get("FORGE_PROVIDER_BASE_URL") or "").rstrip("/")
        self.api_key = self.config.get("FORGE_PROVIDER_API_KEY")
        self.result_format = (self.config.get("FORGE_PROVIDER_RESULT_FORMAT") or "OBJ").upper()
        self.enable_pbr = bool(self.config.get("FORGE_PROVIDER_ENABLE_PBR", False))
        # Per-request caps; a session-wide total would undercut the submit timeout
        self.submit_timeout = aiohttp.ClientTimeout(total=float(self.config.get("FORGE_SUBMIT_TIMEOUT_S", 300)))
        self.query_timeout = aiohttp.ClientTimeout(total=float(self.config.get("FORGE_QUERY_TIMEOUT_S", 60)))
        self.session: Optional[aiohttp.ClientSession] = None

        if not self.base_url or not self.api_key:
            raise ConfigurationError("Provider base URL and API key are required")

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session with auth headers"""
        if self.session is None or self.session.closed:
            headers = {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "User-Agent": "forge3d/0.1",
            }
            self.session = aiohttp.ClientSession(
                headers=headers,
                connector=aiohttp.TCPConnector(limit=10),
            )
        return self.session

    async def startup(self) -> None:
        await self._get_session()

    async def shutdown(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    def _build_payload(
        self, kind: InputKind, content: str, options: Optional[GenerationOptions] = None
    ) -> Dict[str, Any]:
        options = (options or GenerationOptions()).normalized()
        payload: Dict[str, Any] = {
            "kind": kind.value,
            "result_format": options.result_format or self.result_format,
            "enable_pbr": self.enable_pbr if options.enable_pbr is None else options.enable_pbr,
        }
        if options.face_count is not None:
            payload["face_count"] = options.face_count
        if options.generate_type:
            payload["generate_type"] = options.generate_type

        if kind is InputKind.TEXT:
            payload["prompt"] = content
        else:
            payload["image_url"] = content
        return payload

    async def submit(
        self, kind: InputKind, content: str, options: Optional[GenerationOptions] = None
    ) -> str:
        session = await self._get_session()
        payload = self._build_payload(kind, content, options)
        try:
            async with session.post(f"{self.base_url}/jobs", json=payload, timeout=self.submit_timeout) as resp:
                if resp.status not in (200, 201, 202):
                    raise GatewaySubmitError(
                        f"HTTP {resp.status}: {await _error_message(resp)}",
                        status=resp.status,
                        retry_after_seconds=_retry_after(resp),
                    )
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise GatewaySubmitError(f"Provider connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise GatewaySubmitError("Provider submission timed out") from e
        except ValueError as e:
            raise GatewaySubmitError(f"Provider returned malformed JSON: {e}") from e

        provider_job_id = data.get("job_id") if isinstance(data, dict) else None
        if not provider_job_id:
            raise GatewaySubmitError("Provider response did not include a job_id")

        logger.debug(f"Submitted {kind.value} job to provider: {provider_job_id}")
        return str(provider_job_id)

    async def query_status(self, provider_job_id: str) -> ProviderJobStatus:
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}/jobs/{provider_job_id}", timeout=self.query_timeout) as resp:
                if resp.status != 200:
                    raise GatewayPollError(
                        f"HTTP {resp.status}: {await _error_message(resp)}",
                        status=resp.status,
                        retry_after_seconds=_retry_after(resp),
                    )
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise GatewayPollError(f"Provider connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise GatewayPollError("Provider status query timed out") from e
        except ValueError as e:
            raise GatewayPollError(f"Provider returned malformed JSON: {e}") from e

        if not isinstance(data, dict):
            raise GatewayPollError("Provider status response was not an object")

        raw_status = data.get("status")
        files = [
            ResultFile(
                type=f.get("type") or "",
                url=f["url"],
                preview_image_url=f.get("preview_image_url"),
            )
            for f in data.get("result_files") or []
            if isinstance(f, dict) and f.get("url")
        ]
        return ProviderJobStatus(
            status=map_provider_status(raw_status),
            files=files,
            thumbnail_url=data.get("thumbnail_url"),
            error_message=data.get("error_message"),
            raw_status=raw_status,
        )
