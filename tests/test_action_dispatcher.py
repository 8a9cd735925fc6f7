"""
Core Sentry - Action Dispatcher Tests
=====================================
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from coresentry.api.schemas import Decision
from coresentry.constants import ActionKind
from coresentry.core.action_dispatcher import (
    ActionDispatcher,
    ActionHandlerError,
    WebhookActionHandler,
)
from coresentry.utils.http_client import ServiceClient


def make_decision(action: ActionKind, intensity: int = 5) -> Decision:
    return Decision(action=action, reason="test", intensity=intensity)


class TestRegistry:
    """Tests for handler registration."""

    def test_register_and_list(self):
        dispatcher = ActionDispatcher()
        dispatcher.register(ActionKind.REJECT_TRAFFIC, lambda d: None)
        dispatcher.register(ActionKind.SCALE_UP_WORKERS, lambda d: None)

        assert dispatcher.list_registered() == [
            ActionKind.SCALE_UP_WORKERS,
            ActionKind.REJECT_TRAFFIC,
        ]

    def test_register_by_name_and_legacy_alias(self):
        dispatcher = ActionDispatcher()
        handler = MagicMock()

        dispatcher.register("SCALE_WORKERS", handler)

        assert dispatcher.get_handler(ActionKind.SCALE_UP_WORKERS) is handler

    def test_register_replaces_previous(self):
        dispatcher = ActionDispatcher()
        first, second = MagicMock(), MagicMock()

        dispatcher.register(ActionKind.CLEAN_CACHE, first)
        dispatcher.register(ActionKind.CLEAN_CACHE, second)

        assert dispatcher.get_handler(ActionKind.CLEAN_CACHE) is second

    def test_none_cannot_be_registered(self):
        with pytest.raises(ValueError):
            ActionDispatcher().register(ActionKind.NONE, lambda d: None)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            ActionDispatcher().register("RESTART_HOST", lambda d: None)

    def test_non_callable_rejected(self):
        with pytest.raises(ValueError):
            ActionDispatcher().register(ActionKind.CLEAN_CACHE, "not callable")

    def test_unregister(self):
        dispatcher = ActionDispatcher()
        dispatcher.register(ActionKind.CLEAN_CACHE, lambda d: None)

        assert dispatcher.unregister(ActionKind.CLEAN_CACHE) is True
        assert dispatcher.unregister(ActionKind.CLEAN_CACHE) is False
        assert dispatcher.list_registered() == []


class TestDispatch:
    """Tests for decision execution."""

    @pytest.mark.asyncio
    async def test_none_is_noop(self):
        reclaimer = MagicMock()
        dispatcher = ActionDispatcher(memory_reclaimer=reclaimer)

        success, _ = await dispatcher.dispatch(make_decision(ActionKind.NONE))

        assert success is True
        reclaimer.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_handler_receives_decision(self):
        dispatcher = ActionDispatcher()
        handler = MagicMock()
        dispatcher.register(ActionKind.SCALE_UP_WORKERS, handler)
        decision = make_decision(ActionKind.SCALE_UP_WORKERS, intensity=8)

        success, _ = await dispatcher.dispatch(decision)

        assert success is True
        handler.assert_called_once_with(decision)

    @pytest.mark.asyncio
    async def test_async_handler_awaited(self):
        dispatcher = ActionDispatcher()
        handler = AsyncMock()
        dispatcher.register(ActionKind.REJECT_TRAFFIC, handler)

        success, _ = await dispatcher.dispatch(make_decision(ActionKind.REJECT_TRAFFIC))

        assert success is True
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handler_failure_is_contained(self):
        dispatcher = ActionDispatcher()
        dispatcher.register(ActionKind.SCALE_UP_WORKERS, MagicMock(side_effect=RuntimeError("pool exhausted")))

        success, message = await dispatcher.dispatch(make_decision(ActionKind.SCALE_UP_WORKERS))

        assert success is False
        assert "pool exhausted" in message

    @pytest.mark.asyncio
    async def test_clean_cache_falls_back_to_reclaimer(self):
        reclaimer = MagicMock(return_value=12)
        dispatcher = ActionDispatcher(memory_reclaimer=reclaimer)

        success, message = await dispatcher.dispatch(make_decision(ActionKind.CLEAN_CACHE))

        assert success is True
        assert message == "Memory reclaim triggered"
        reclaimer.assert_called_once()

    @pytest.mark.asyncio
    async def test_custom_clean_cache_handler_overrides_reclaimer(self):
        reclaimer = MagicMock()
        dispatcher = ActionDispatcher(memory_reclaimer=reclaimer)
        handler = MagicMock()
        dispatcher.register(ActionKind.CLEAN_CACHE, handler)

        await dispatcher.dispatch(make_decision(ActionKind.CLEAN_CACHE))

        handler.assert_called_once()
        reclaimer.assert_not_called()

    @pytest.mark.asyncio
    async def test_clean_cache_without_reclaimer(self, caplog):
        dispatcher = ActionDispatcher(memory_reclaimer=None)

        success, message = await dispatcher.dispatch(make_decision(ActionKind.CLEAN_CACHE))

        assert success is False
        assert message == "Memory reclaim unavailable"
        assert "Memory reclaim unavailable" in caplog.text

    @pytest.mark.asyncio
    async def test_unhandled_kind_logs(self, caplog):
        dispatcher = ActionDispatcher()

        with caplog.at_level("INFO"):
            success, _ = await dispatcher.dispatch(make_decision(ActionKind.SCALE_DOWN_WORKERS))

        assert success is False
        assert "No handler configured for SCALE_DOWN_WORKERS" in caplog.text


class TestWebhookActionHandler:
    """Tests for webhook handlers."""

    @pytest.mark.asyncio
    async def test_posts_decision(self):
        service_client = ServiceClient()
        handler = WebhookActionHandler("http://executor/scale", client=service_client)

        with patch.object(service_client, "_get_client") as mock_get_client:
            mock_http = AsyncMock()
            mock_response = MagicMock()
            mock_response.status_code = 202
            mock_http.post.return_value = mock_response
            mock_get_client.return_value = mock_http

            await handler(make_decision(ActionKind.SCALE_UP_WORKERS, intensity=9))

            args, kwargs = mock_http.post.call_args
            assert args[0] == "http://executor/scale"
            assert kwargs["json"] == {"action": "SCALE_UP_WORKERS", "reason": "test", "intensity": 9}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        service_client = ServiceClient()
        handler = WebhookActionHandler("http://executor/scale", client=service_client)

        with patch.object(service_client, "_get_client") as mock_get_client:
            mock_http = AsyncMock()
            mock_response = MagicMock()
            mock_response.status_code = 500
            mock_http.post.return_value = mock_response
            mock_get_client.return_value = mock_http

            with pytest.raises(ActionHandlerError):
                await handler(make_decision(ActionKind.SCALE_UP_WORKERS))

    @pytest.mark.asyncio
    async def test_failure_reported_through_dispatcher(self):
        handler = WebhookActionHandler("http://executor/scale")
        handler._client = MagicMock()
        handler._client.post = AsyncMock(side_effect=ActionHandlerError("down"))
        dispatcher = ActionDispatcher()
        dispatcher.register(ActionKind.SCALE_UP_WORKERS, handler)

        success, _ = await dispatcher.dispatch(make_decision(ActionKind.SCALE_UP_WORKERS))

        assert success is False
