"""Unit tests for source client loading and the Celery configuration."""

from unittest.mock import patch

import pytest

from callbridge_core.config import Settings
from callbridge_core.providers.base import FetchPageRequest, MessagePage, MessageSourceClient
from callbridge_worker.sources import SourceClientConfigError, load_source_client


class EmptySourceClient(MessageSourceClient):
    def __init__(self, settings):
        self.settings = settings

    async def fetch_page(self, account_id: str, request: FetchPageRequest) -> MessagePage:
        return MessagePage(messages=[])


def build_client(settings):
    return EmptySourceClient(settings)


def build_wrong_type(settings):
    return object()


class TestLoadSourceClient:
    """Tests for load_source_client."""

    def test_builds_client_from_factory(self):
        settings = Settings(source_client_factory=f"{__name__}:build_client")

        client = load_source_client(settings)

        assert isinstance(client, EmptySourceClient)
        assert client.settings is settings

    @pytest.mark.parametrize("path", [None, "", "no_colon_here"])
    def test_factory_must_be_configured(self, path):
        with pytest.raises(SourceClientConfigError):
            load_source_client(Settings(source_client_factory=path))

    @pytest.mark.parametrize(
        "path",
        ["callbridge_nonexistent_module:build", f"{__name__}:no_such_factory"],
    )
    def test_unloadable_factory(self, path):
        with pytest.raises(SourceClientConfigError):
            load_source_client(Settings(source_client_factory=path))

    def test_factory_must_return_source_client(self):
        settings = Settings(source_client_factory=f"{__name__}:build_wrong_type")

        with pytest.raises(SourceClientConfigError) as exc_info:
            load_source_client(settings)

        assert "object" in str(exc_info.value)


class TestCeleryConfig:
    """Tests for the Celery application configuration."""

    def test_json_serialization(self, mock_celery_app):
        assert mock_celery_app.conf.task_serializer == "json"
        assert mock_celery_app.conf.accept_content == ["json"]

    def test_periodic_sync_scheduled(self, mock_celery_app):
        entry = mock_celery_app.conf.beat_schedule["sync-all-accounts-periodic"]

        assert entry["task"] == "ingest.sync_all_accounts"
        assert entry["schedule"] > 0

    def test_worker_logging_uses_structured_setup(self, mock_celery_app):
        from callbridge_worker.celery_app import configure_worker_logging

        with patch("callbridge_worker.celery_app.configure_logging") as configure:
            configure_worker_logging()

        assert configure.call_args.kwargs["service_name"] == "callbridge-worker"
