"""Tests for the in-process task platform and secret relay."""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from core.crypto import SessionKey, decrypt_oracle_response
from core.enclave import (
    InMemorySecretRelay,
    MockTaskPlatform,
    PushResult,
    SecretAlreadyExistsError,
    SecretRelayError,
    TaskFailedError,
    TaskPlatformError,
    TaskStatus,
    TaskTimeoutError,
    default_apps,
    push_unique_secret,
)


# =============================================================================
# Secret Relay
# =============================================================================

class TestInMemorySecretRelay:
    """Tests for the write-once relay."""

    @pytest.mark.asyncio
    async def test_push_and_exists(self):
        relay = InMemorySecretRelay()

        result = await relay.push("prompt_1", "ping")

        assert result == PushResult(pushed=True, name="prompt_1", owner=relay.identity)
        assert await relay.exists(relay.identity, "prompt_1")
        assert not await relay.exists(relay.identity, "prompt_2")

    @pytest.mark.asyncio
    async def test_push_is_write_once(self):
        """A second push under the same name is rejected and the first value survives."""
        relay = InMemorySecretRelay()
        await relay.push("km_1", "first")

        with pytest.raises(SecretAlreadyExistsError):
            await relay.push("km_1", "second")

        assert relay.read_from_tee(relay.identity, "km_1") == "first"

    @pytest.mark.asyncio
    async def test_secrets_are_scoped_by_owner(self):
        relay_a = InMemorySecretRelay(identity="0x" + "a" * 40)
        await relay_a.push("name", "value")
        assert not await relay_a.exists("0x" + "b" * 40, "name")

    @pytest.mark.asyncio
    async def test_owner_match_is_case_insensitive(self):
        relay = InMemorySecretRelay(identity="0x" + "A" * 40)
        await relay.push("name", "value")
        assert await relay.exists("0x" + "a" * 40, "name")


class TestPushUniqueSecret:
    """Tests for collision handling on push."""

    @pytest.mark.asyncio
    async def test_uses_base_name_when_free(self):
        relay = InMemorySecretRelay()
        assert await push_unique_secret(relay, "prompt_1", "ping") == "prompt_1"

    @pytest.mark.asyncio
    async def test_disambiguates_instead_of_clobbering(self):
        relay = InMemorySecretRelay()
        await relay.push("prompt_1", "first")

        name = await push_unique_secret(relay, "prompt_1", "second")

        assert name != "prompt_1"
        assert name.startswith("prompt_1-")
        assert relay.read_from_tee(relay.identity, "prompt_1") == "first"
        assert relay.read_from_tee(relay.identity, name) == "second"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        relay = AsyncMock()
        relay.push.side_effect = SecretAlreadyExistsError("taken")

        with pytest.raises(SecretAlreadyExistsError, match="Could not find a free name"):
            await push_unique_secret(relay, "x", "v", max_attempts=3)
        assert relay.push.await_count == 3

    @pytest.mark.asyncio
    async def test_refused_push(self):
        relay = AsyncMock()
        relay.push.return_value = PushResult(pushed=False, name="x", owner="0x0")

        with pytest.raises(SecretRelayError, match="refused"):
            await push_unique_secret(relay, "x", "v")


# =============================================================================
# Task Platform
# =============================================================================

class TestMockTaskPlatform:
    """Tests for in-process task execution."""

    @pytest.mark.asyncio
    async def test_bound_secrets_reach_the_app(self):
        relay = InMemorySecretRelay()
        await relay.push("secret_a", "value-a")
        seen = {}

        async def app(args, bound):
            seen.update(args=args, bound=bound)
            return {"success": True}

        platform = MockTaskPlatform(relay, apps={"echo": app})
        handle = await platform.dispatch("echo", ["x", "y"], {1: "secret_a"})
        record = await platform.await_result(handle.task_id, timeout=1, poll_interval=0.01)

        assert record == {"success": True}
        assert seen == {"args": ["x", "y"], "bound": {1: "value-a"}}
        assert handle.task_id.startswith("0x") and len(handle.task_id) == 66

    @pytest.mark.asyncio
    async def test_unknown_app(self):
        platform = MockTaskPlatform(InMemorySecretRelay(), apps={})
        with pytest.raises(TaskPlatformError, match="Unknown app"):
            await platform.dispatch("nope", [], {})

    @pytest.mark.asyncio
    async def test_unbound_secret(self):
        platform = MockTaskPlatform(InMemorySecretRelay(), apps={"a": AsyncMock()})
        with pytest.raises(TaskPlatformError, match="not available"):
            await platform.dispatch("a", [], {1: "missing"})

    @pytest.mark.asyncio
    async def test_status_lifecycle(self):
        release = asyncio.Event()

        async def app(args, bound):
            await release.wait()
            return {"success": True}

        platform = MockTaskPlatform(InMemorySecretRelay(), apps={"slow": app})
        handle = await platform.dispatch("slow", [], {})

        assert await platform.get_status(handle.task_id) == TaskStatus.ACTIVE
        with pytest.raises(TaskPlatformError, match="no result"):
            await platform.fetch_result(handle.task_id)

        release.set()
        await platform.await_result(handle.task_id, timeout=1, poll_interval=0.01)
        assert await platform.get_status(handle.task_id) == TaskStatus.COMPLETED
        assert await platform.get_status("0xunknown") == TaskStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_crashed_app_is_failed(self):
        async def app(args, bound):
            raise RuntimeError("enclave crashed")

        platform = MockTaskPlatform(InMemorySecretRelay(), apps={"crash": app})
        handle = await platform.dispatch("crash", [], {})

        with pytest.raises(TaskFailedError):
            await platform.await_result(handle.task_id, timeout=1, poll_interval=0.01)

    @pytest.mark.asyncio
    async def test_await_timeout_does_not_kill_task(self):
        """Timing out stops the wait; the task can still complete later."""
        platform = MockTaskPlatform(
            InMemorySecretRelay(),
            apps={"late": AsyncMock(return_value={"success": True})},
            execution_delay=0.2,
        )
        handle = await platform.dispatch("late", [], {})

        with pytest.raises(TaskTimeoutError):
            await platform.await_result(handle.task_id, timeout=0.02, poll_interval=0.01)

        record = await platform.await_result(handle.task_id, timeout=2, poll_interval=0.01)
        assert record == {"success": True}

    @pytest.mark.asyncio
    async def test_records_dispatches(self):
        platform = MockTaskPlatform(InMemorySecretRelay(), apps={"a": AsyncMock(return_value={})})
        await platform.dispatch("a", ["1"], {})
        assert platform.dispatched == [("a", ["1"], {})]

    @pytest.mark.asyncio
    async def test_finished_tasks_are_evicted(self):
        """Past max_tasks the oldest finished task is forgotten; running ones are kept."""
        release = asyncio.Event()

        async def slow(args, bound):
            await release.wait()
            return {"success": True}

        platform = MockTaskPlatform(
            InMemorySecretRelay(),
            apps={"fast": AsyncMock(return_value={"success": True}), "slow": slow},
            max_tasks=2,
        )
        running = await platform.dispatch("slow", [], {})
        first = await platform.dispatch("fast", [], {})
        await platform.await_result(first.task_id, timeout=1, poll_interval=0.01)
        second = await platform.dispatch("fast", [], {})
        await platform.await_result(second.task_id, timeout=1, poll_interval=0.01)
        third = await platform.dispatch("fast", [], {})

        assert await platform.get_status(first.task_id) == TaskStatus.UNKNOWN
        assert await platform.get_status(running.task_id) == TaskStatus.ACTIVE
        assert await platform.get_status(second.task_id) == TaskStatus.UNKNOWN
        assert await platform.await_result(third.task_id, timeout=1, poll_interval=0.01) == {"success": True}

        release.set()
        await platform.close()


class TestDefaultApps:
    """The default registry runs the real TEE applications."""

    @pytest.mark.asyncio
    async def test_two_phase_flow(self):
        relay = InMemorySecretRelay()
        platform = MockTaskPlatform(relay, apps=default_apps(provider_mode="simulated"))

        await relay.push("km_s1", "sk-test-ABC")
        handle = await platform.dispatch("key-manager", ["generate-session", "s1"], {1: "km_s1"})
        session = await platform.await_result(handle.task_id, timeout=2, poll_interval=0.01)
        assert session["success"] is True

        await relay.push("prompt_p1", "ping")
        await relay.push("sessionkey_p1", json.dumps(session["sessionKey"]))
        await relay.push("encapikey_p1", json.dumps(session["encryptedCredential"]))
        handle = await platform.dispatch(
            "oracle",
            ["openai", "gpt-4o-mini", "64", "", "s1"],
            {1: "prompt_p1", 2: "sessionkey_p1", 3: "encapikey_p1"},
        )
        result = await platform.await_result(handle.task_id, timeout=2, poll_interval=0.01)

        assert result["success"] is True
        body = decrypt_oracle_response(
            result["encryptedResponse"], result["iv"], SessionKey.from_dict(session["sessionKey"])
        )
        assert body["content"].startswith("[Simulated]")
