"""
Shared fixtures for the job orchestration tests.

Every test gets a config dict rooted in its own tmp_path and a scriptable
in-memory provider gateway, so nothing touches the network or the repo.
"""

import asyncio
from typing import Dict, List, Optional, Union

import pytest

from forge3d.jobs.gateway import ProviderGateway
from forge3d.jobs.types import GenerationOptions, InputKind, ProviderJobStatus, ProviderStatus, ResultFile

ScriptItem = Union[ProviderJobStatus, Exception]


def running(raw: str = "RUN") -> ProviderJobStatus:
    return ProviderJobStatus(status=ProviderStatus.PROCESSING, raw_status=raw)


def done(url: str = "https://cdn.test/model.obj", file_type: str = "OBJ") -> ProviderJobStatus:
    return ProviderJobStatus(
        status=ProviderStatus.COMPLETED,
        files=[ResultFile(type=file_type, url=url, preview_image_url="https://cdn.test/preview.png")],
        thumbnail_url="https://cdn.test/thumb.png",
        raw_status="DONE",
    )


class FakeGateway(ProviderGateway):
    """Scriptable provider: each submitted job replays ``script`` on query_status.

    The last script item repeats once the others are used up.
    """

    def __init__(self, script: Optional[List[ScriptItem]] = None):
        self.script: List[ScriptItem] = script or [running(), done()]
        self.submit_error: Optional[Exception] = None
        self.submit_delay: float = 0.0
        self.submit_calls: List[tuple] = []
        self.submit_options: List[Optional[GenerationOptions]] = []
        self.query_calls: List[str] = []
        self.scripts: Dict[str, List[ScriptItem]] = {}
        self.in_flight = 0
        self.peak_in_flight = 0
        self.started = False
        self.stopped = False

    async def startup(self) -> None:
        self.started = True

    async def shutdown(self) -> None:
        self.stopped = True

    async def submit(self, kind: InputKind, content: str, options: Optional[GenerationOptions] = None) -> str:
        self.submit_calls.append((kind, content))
        self.submit_options.append(options)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            if self.submit_error is not None:
                raise self.submit_error
        finally:
            self.in_flight -= 1

        provider_job_id = f"prov-{len(self.submit_calls)}"
        self.scripts[provider_job_id] = list(self.script)
        return provider_job_id

    async def query_status(self, provider_job_id: str) -> ProviderJobStatus:
        self.query_calls.append(provider_job_id)
        script = self.scripts.setdefault(provider_job_id, list(self.script))
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def config(tmp_path):
    return {
        "FORGE_DATA_DIR": tmp_path,
        "FORGE_JOBS_DIR": tmp_path / "jobs",
        "FORGE_CACHE_DIR": tmp_path / "cache",
        "FORGE_LEDGER_PATH": tmp_path / "ledger.jsonl",
        "FORGE_WORKERS": 2,
        "FORGE_QUEUE_SIZE": 10,
        "FORGE_POLL_INTERVAL_S": 0,
        "FORGE_SUBMIT_TIMEOUT_S": 5,
        "FORGE_QUERY_TIMEOUT_S": 5,
        "FORGE_POLL_MAX_CONSECUTIVE_ERRORS": 3,
        "FORGE_POLL_MAX_SECONDS": 0,
        "FORGE_CACHE_TTL_S": 3600,
        "FORGE_CACHE_MAX_ENTRIES": 100,
        "FORGE_PROVIDER_BASE_URL": "https://provider.test",
        "FORGE_PROVIDER_API_KEY": "test-key",
        "FORGE_PROVIDER_RESULT_FORMAT": "OBJ",
        "FORGE_PROVIDER_ENABLE_PBR": False,
        "FORGE_PROVIDER_MAX_RETRIES": 1,
        "FORGE_PROVIDER_RETRY_DELAY_S": 0,
        "LOG_LEVEL": "DEBUG",
        "LOG_JSONL_PATH": str(tmp_path / "logs" / "forge3d.jsonl"),
    }


@pytest.fixture
def fake_gateway():
    return FakeGateway()
