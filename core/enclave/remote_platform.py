"""
HTTP clients for a remote confidential compute platform.

RemoteTaskPlatform talks to the task gateway (dispatch and status) and to
the result gateway (output archives). RemoteSecretRelay talks to the
TEE-only secret store.

Usage:
    platform = RemoteTaskPlatform(
        gateway_url="https://tasks.example.net",
        result_gateway_url="https://ipfs.example.net",
        workerpool="prod-pool",
    )
    handle = await platform.dispatch("oracle", ["openai", "gpt-4o-mini", "512"], {1: "prompt_abc"})
    record = await platform.await_result(handle.task_id, timeout=300)
"""

import io
import json
import logging
import shlex
import zipfile
from typing import Dict, Optional, Sequence

import httpx

from .enclave_types import (
    PushResult,
    SecretAlreadyExistsError,
    SecretRelayError,
    SecretRelayInterface,
    TaskHandle,
    TaskPlatformError,
    TaskPlatformInterface,
    TaskStatus,
)

logger = logging.getLogger(__name__)

RESULT_FILE = "result.json"


def parse_result_archive(content: bytes) -> dict:
    """
    Parse a task result as published on the result gateway.

    Results are either a bare JSON document or a zip archive holding
    result.json (possibly nested in a directory).

    Raises:
        TaskPlatformError: If no output record can be found
    """
    if content[:2] == b"PK":
        try:
            with zipfile.ZipFile(io.BytesIO(content)) as archive:
                names = [n for n in archive.namelist() if n.rsplit("/", 1)[-1] == RESULT_FILE]
                if not names:
                    raise TaskPlatformError(f"Result archive has no {RESULT_FILE}")
                content = archive.read(names[0])
        except zipfile.BadZipFile as e:
            raise TaskPlatformError(f"Corrupt result archive: {e}") from e

    try:
        record = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TaskPlatformError(f"Result is not valid JSON: {e}") from e

    if not isinstance(record, dict):
        raise TaskPlatformError("Result is not a JSON object")
    return record


class RemoteTaskPlatform(TaskPlatformInterface):
    """Task platform client over HTTP."""

    def __init__(
        self,
        gateway_url: str,
        result_gateway_url: str,
        workerpool: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            gateway_url: Base URL of the task gateway
            result_gateway_url: Base URL where result archives are published
            workerpool: Workerpool the tasks are matched against
            timeout: Per-request HTTP timeout in seconds
            transport: Optional httpx transport (tests)

        Raises:
            TaskPlatformError: If gateway_url is not set
        """
        if not gateway_url:
            raise TaskPlatformError("TASK_GATEWAY_URL is required for the remote task platform")
        self.gateway_url = gateway_url.rstrip("/")
        self.result_gateway_url = result_gateway_url.rstrip("/")
        self.workerpool = workerpool
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TaskPlatformError(f"Task gateway unreachable: {e}") from e
        if response.status_code >= 400:
            raise TaskPlatformError(f"Task gateway error {response.status_code}: {response.text}")
        return response

    async def dispatch(self, app: str, args: Sequence[str], secret_bindings: Dict[int, str]) -> TaskHandle:
        body = {
            "app": app,
            "workerpool": self.workerpool,
            "args": shlex.join(args),
            "secrets": {str(index): name for index, name in secret_bindings.items()},
            "tag": ["tee", "scone"],
        }
        response = await self._request("POST", f"{self.gateway_url}/tasks", json=body)
        data = response.json()

        task_id = data.get("taskId")
        if not task_id:
            raise TaskPlatformError(f"Task gateway returned no taskId: {data}")

        logger.info(f"Dispatched {app} as task {task_id} (deal {data.get('dealId')})")
        return TaskHandle(task_id=task_id, deal_id=data.get("dealId"))

    @staticmethod
    def _parse_status(data: dict) -> TaskStatus:
        try:
            return TaskStatus.from_code(int(data.get("status")))
        except (TypeError, ValueError):
            return TaskStatus.UNKNOWN

    async def get_status(self, task_id: str) -> TaskStatus:
        response = await self._request("GET", f"{self.gateway_url}/tasks/{task_id}")
        return self._parse_status(response.json())

    async def fetch_result(self, task_id: str) -> dict:
        response = await self._request("GET", f"{self.gateway_url}/tasks/{task_id}")
        data = response.json()
        status = self._parse_status(data)
        if status != TaskStatus.COMPLETED:
            raise TaskPlatformError(f"Task {task_id} is not completed (status {status.value})")

        location = data.get("resultLocation") or data.get("results")
        if not location:
            raise TaskPlatformError(f"Task {task_id} has no result location")

        if location.startswith("/ipfs/"):
            url = f"{self.result_gateway_url}{location}"
        elif location.startswith("http"):
            url = location
        else:
            url = f"{self.result_gateway_url}/ipfs/{location}"

        result = await self._request("GET", url)
        return parse_result_archive(result.content)

    async def close(self) -> None:
        await self._client.aclose()


class RemoteSecretRelay(SecretRelayInterface):
    """Secret relay client over HTTP."""

    def __init__(
        self,
        relay_url: str,
        identity: str,
        token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not relay_url:
            raise SecretRelayError("SECRET_RELAY_URL is required for the remote secret relay")
        self.relay_url = relay_url.rstrip("/")
        self._identity = identity
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport, headers=headers)

    @property
    def identity(self) -> str:
        return self._identity

    def _url(self, owner: str, name: str) -> str:
        return f"{self.relay_url}/requesters/{owner}/secrets/{name}"

    async def push(self, name: str, value: str) -> PushResult:
        try:
            response = await self._client.post(self._url(self._identity, name), json={"value": value})
        except httpx.HTTPError as e:
            raise SecretRelayError(f"Secret relay unreachable: {e}") from e

        if response.status_code == 409:
            raise SecretAlreadyExistsError(f"Secret {name} already exists for {self._identity}")
        if response.status_code >= 400:
            raise SecretRelayError(f"Secret relay error {response.status_code}: {response.text}")

        logger.debug(f"Pushed secret {name}")
        return PushResult(pushed=True, name=name, owner=self._identity)

    async def exists(self, owner: str, name: str) -> bool:
        try:
            response = await self._client.head(self._url(owner, name))
        except httpx.HTTPError as e:
            raise SecretRelayError(f"Secret relay unreachable: {e}") from e
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise SecretRelayError(f"Secret relay error {response.status_code}")
        return True

    async def close(self) -> None:
        await self._client.aclose()


__all__ = [
    "RemoteTaskPlatform",
    "RemoteSecretRelay",
    "parse_result_archive",
]
