"""
Tests for the end-to-end pipeline controller.
"""

import base64
import logging
import os
import shutil
import tempfile
from decimal import Decimal
from unittest.mock import Mock, patch

import httpx
import pytest

from menu_image_guard.config.loader import BudgetConfig, GenerationConfig, StorageConfig
from menu_image_guard.core.budget import BudgetLedger
from menu_image_guard.core.cache import ArtifactCache
from menu_image_guard.core.errors import (
    AuthorizationError,
    GenerationEmptyResultError,
    GenerationTransportError,
    InputValidationError,
    MisconfigurationError,
    StorageWriteError,
)
from menu_image_guard.core.membership import MembershipGate
from menu_image_guard.core.pipeline import (
    GenerationRequest,
    PipelineController,
    PipelineResponse,
    PipelineState,
)
from menu_image_guard.core.policy import FAILURE_POLICY, Collaborator, OnError
from menu_image_guard.sdk.gemini_client import GeminiImageClient
from menu_image_guard.sdk.object_store import ArtifactStore
from menu_image_guard.sdk.results import Artifact
from menu_image_guard.storage.db import get_connection
from menu_image_guard.storage.models import Group, GroupMember
from menu_image_guard.storage.repository import (
    LEDGER_ID,
    BudgetRepository,
    CacheRepository,
    GroupRepository,
    initialize_schema,
)

URL = "https://storage.googleapis.com/bucket/menu-images/taco-night.png"
REQUEST = GenerationRequest(subject_text="Taco Night!!", group_id="g1", caller_name="Ana")


class TestPipelineWithMockCollaborators:
    """Ordering and short-circuit behaviour with every collaborator mocked."""

    def setup_method(self):
        self.gate = Mock(spec=MembershipGate)
        self.gate.is_member.return_value = True
        self.cache = Mock(spec=ArtifactCache)
        self.cache.lookup.return_value = None
        self.cache.insert.return_value = True
        self.ledger = Mock(spec=BudgetLedger)
        self.ledger.check_available.return_value = True
        self.ledger.commit_increment.return_value = True
        self.generator = Mock(spec=GeminiImageClient)
        self.generator.generate.return_value = Artifact(payload=b"png", mime_type="image/png")
        self.store = Mock(spec=ArtifactStore)
        self.store.put.return_value = URL
        self.api_key_provider = Mock(return_value="secret-key")

        # Shared parent records the order of calls across collaborators
        self.calls = Mock()
        self.calls.attach_mock(self.gate, "gate")
        self.calls.attach_mock(self.cache, "cache")
        self.calls.attach_mock(self.ledger, "ledger")
        self.calls.attach_mock(self.generator, "generator")
        self.calls.attach_mock(self.store, "store")

        self.controller = PipelineController(
            gate=self.gate,
            cache=self.cache,
            ledger=self.ledger,
            generator=self.generator,
            store=self.store,
            api_key_provider=self.api_key_provider,
        )

    def _assert_no_paid_work(self):
        self.generator.generate.assert_not_called()
        self.store.put.assert_not_called()
        self.ledger.commit_increment.assert_not_called()
        self.cache.insert.assert_not_called()

    def test_generation_path_order(self):
        response = self.controller.handle(REQUEST)

        assert response == PipelineResponse(artifact_url=URL)
        names = [c[0] for c in self.calls.mock_calls]
        assert names == [
            "gate.is_member",
            "cache.lookup",
            "ledger.check_available",
            "store.check_configured",
            "generator.generate",
            "store.put",
            "ledger.commit_increment",
            "cache.insert",
        ]
        self.store.put.assert_called_once_with(b"png", "taco-night", "image/png")
        self.cache.insert.assert_called_once_with("taco night", URL)
        assert response.trail == (
            PipelineState.AUTHORIZING,
            PipelineState.CACHE_CHECKING,
            PipelineState.BUDGET_CHECKING,
            PipelineState.GENERATING,
            PipelineState.UPLOADING,
            PipelineState.ACCOUNTING_COMMIT,
            PipelineState.CACHE_WRITING,
            PipelineState.RESPONDING,
        )

    def test_prompt_uses_original_title(self):
        self.controller.handle(REQUEST)

        prompt, api_key = self.generator.generate.call_args[0]
        assert "Taco Night!!" in prompt
        assert api_key == "secret-key"

    @pytest.mark.parametrize("field", ["subject_text", "group_id", "caller_name"])
    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_missing_field_rejected_before_any_work(self, field, value):
        values = {"subject_text": "Tacos", "group_id": "g1", "caller_name": "Ana"}
        values[field] = value

        with pytest.raises(InputValidationError, match=field):
            self.controller.handle(GenerationRequest(**values))

        assert self.calls.mock_calls == []

    def test_non_member_rejected_before_cache_and_budget(self):
        self.gate.is_member.return_value = False

        with pytest.raises(AuthorizationError):
            self.controller.handle(REQUEST)

        self.cache.lookup.assert_not_called()
        self.ledger.check_available.assert_not_called()
        self._assert_no_paid_work()

    def test_cache_hit_skips_budget_and_generation(self):
        self.cache.lookup.return_value = "https://cached/taco-night.png"

        response = self.controller.handle(REQUEST)

        assert response.to_dict() == {
            "artifactURL": "https://cached/taco-night.png",
            "cached": True,
            "budgetExceeded": False,
        }
        self.cache.lookup.assert_called_once_with("taco night")
        self.ledger.check_available.assert_not_called()
        self.api_key_provider.assert_not_called()
        self._assert_no_paid_work()

    def test_budget_exceeded_skips_generation(self):
        self.ledger.check_available.return_value = False

        response = self.controller.handle(REQUEST)

        assert response.to_dict() == {"artifactURL": None, "cached": False, "budgetExceeded": True}
        self.api_key_provider.assert_not_called()
        self._assert_no_paid_work()

    def test_missing_credential_rejected_before_generation(self):
        self.api_key_provider.side_effect = MisconfigurationError("no key")

        with pytest.raises(MisconfigurationError):
            self.controller.handle(REQUEST)

        self._assert_no_paid_work()

    @pytest.mark.parametrize("error", [
        GenerationTransportError("Gemini API error: 500", status_code=500),
        GenerationEmptyResultError("No image data found in Gemini response"),
    ])
    def test_generation_failure_degrades_to_error_response(self, error):
        self.generator.generate.side_effect = error

        response = self.controller.handle(REQUEST)

        assert response.to_dict() == {
            "artifactURL": None,
            "cached": False,
            "budgetExceeded": False,
            "error": str(error),
        }
        self.generator.generate.assert_called_once()
        self.store.put.assert_not_called()
        self.ledger.commit_increment.assert_not_called()
        self.cache.insert.assert_not_called()
        assert response.trail[-1] is PipelineState.RESPONDING

    def test_storage_failure_degrades_without_accounting(self):
        self.store.put.side_effect = StorageWriteError("Failed to upload image to Storage")

        response = self.controller.handle(REQUEST)

        assert response.error == "Failed to upload image to Storage"
        assert response.artifact_url is None
        self.ledger.commit_increment.assert_not_called()
        self.cache.insert.assert_not_called()

    def test_failed_commit_still_returns_url_but_skips_cache(self):
        self.ledger.commit_increment.return_value = False

        response = self.controller.handle(REQUEST)

        assert response.artifact_url == URL
        assert response.error is None
        self.cache.insert.assert_not_called()
        assert PipelineState.CACHE_WRITING not in response.trail

    def test_failed_cache_write_still_returns_url(self):
        self.cache.insert.return_value = False

        response = self.controller.handle(REQUEST)

        assert response == PipelineResponse(artifact_url=URL)

    def test_missing_bucket_rejected_before_generation(self):
        self.store.check_configured.side_effect = MisconfigurationError("storage bucket is not configured")

        with pytest.raises(MisconfigurationError, match="bucket"):
            self.controller.handle(REQUEST)

        self._assert_no_paid_work()

    def test_generation_follows_policy_table(self):
        self.generator.generate.side_effect = GenerationTransportError("Gemini API error: 500", status_code=500)

        with patch.dict(FAILURE_POLICY, {Collaborator.GENERATION: OnError.SWALLOW}):
            response = self.controller.handle(REQUEST)

        assert response.error == "Image generation failed"
        self.store.put.assert_not_called()
        self.ledger.commit_increment.assert_not_called()

    def test_storage_follows_policy_table(self):
        self.store.put.side_effect = StorageWriteError("Failed to upload image to Storage")

        with patch.dict(FAILURE_POLICY, {Collaborator.ARTIFACT_STORAGE: OnError.SWALLOW}):
            response = self.controller.handle(REQUEST)

        assert response.error == "Image upload failed"
        self.ledger.commit_increment.assert_not_called()
        self.cache.insert.assert_not_called()

    @patch('menu_image_guard.core.pipeline.monotonic')
    def test_overrunning_deadline_is_logged(self, mock_monotonic, caplog):
        mock_monotonic.side_effect = [0.0, 75.0]
        self.controller.request_timeout_seconds = 60.0

        with caplog.at_level(logging.WARNING, logger="menu_image_guard.core.pipeline"):
            response = self.controller.handle(REQUEST)

        assert response.artifact_url == URL
        assert "over the 60.0s deadline" in caplog.text

    @patch('menu_image_guard.core.pipeline.monotonic')
    def test_request_within_deadline_not_logged(self, mock_monotonic, caplog):
        mock_monotonic.side_effect = [0.0, 5.0]
        self.controller.request_timeout_seconds = 60.0

        with caplog.at_level(logging.WARNING, logger="menu_image_guard.core.pipeline"):
            self.controller.handle(REQUEST)

        assert "deadline" not in caplog.text

    def test_close_releases_generator(self):
        self.controller.close()
        self.generator.close.assert_called_once_with()


class TestPipelineResponse:
    """Test the caller-facing response contract."""

    def test_exactly_one_outcome(self):
        with pytest.raises(ValueError):
            PipelineResponse()
        with pytest.raises(ValueError):
            PipelineResponse(artifact_url=URL, budget_exceeded=True)
        with pytest.raises(ValueError):
            PipelineResponse(budget_exceeded=True, error="x")

    def test_cached_requires_url(self):
        with pytest.raises(ValueError):
            PipelineResponse(cached=True, budget_exceeded=True)

    def test_error_key_only_when_present(self):
        assert "error" not in PipelineResponse(artifact_url=URL).to_dict()
        assert PipelineResponse(error="boom").to_dict()["error"] == "boom"


class TestGenerationRequest:
    """Test request parsing."""

    def test_from_dict(self):
        request = GenerationRequest.from_dict(
            {"subjectText": "Taco Night!!", "groupId": "g1", "callerName": "Ana"}
        )
        assert request == REQUEST

    def test_from_dict_missing_field_fails_validation(self):
        request = GenerationRequest.from_dict({"subjectText": "Tacos", "groupId": "g1"})
        with pytest.raises(InputValidationError, match="caller_name"):
            request.validate()


class TestPipelineScenarios:
    """End-to-end scenarios on SQLite with mocked HTTP and bucket."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        GroupRepository(self.db_path).save_group(
            Group(group_id="g1", name="Supper Club", members=[GroupMember(name="Ana")])
        )

        self.http_requests = []

        def handler(request):
            self.http_requests.append(request)
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [
                {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(b"png").decode()}}
            ]}}]})

        self.bucket = Mock()
        self.bucket.name = "meal-bucket"
        self.budget_config = BudgetConfig(unit_cost=Decimal("0.04"), cap=Decimal("25.00"))
        self.budget_repository = BudgetRepository(self.db_path)
        self.cache_repository = CacheRepository(self.db_path)

        self.controller = PipelineController(
            gate=MembershipGate(GroupRepository(self.db_path)),
            cache=ArtifactCache(self.cache_repository),
            ledger=BudgetLedger(self.budget_repository, self.budget_config),
            generator=GeminiImageClient(
                GenerationConfig(),
                http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            ),
            store=ArtifactStore(StorageConfig(bucket="meal-bucket"), bucket=self.bucket),
            api_key_provider=lambda: "secret-key",
        )

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_scenario_a_generates_stores_counts_and_caches(self):
        response = self.controller.handle(REQUEST)

        expected_url = "https://storage.googleapis.com/meal-bucket/menu-images/taco-night.png"
        assert response.to_dict() == {"artifactURL": expected_url, "cached": False, "budgetExceeded": False}

        assert len(self.http_requests) == 1
        assert b"Taco Night!!" in self.http_requests[0].content
        self.bucket.blob.assert_called_once_with("menu-images/taco-night.png")

        state = self.budget_repository.get_state()
        assert state.units_generated == 1
        assert state.total_cost_spent == Decimal("0.04")
        assert self.cache_repository.count("taco night") == 1
        assert self.cache_repository.find_first("taco night").artifact_url == expected_url

    def test_scenario_b_returns_cached_url(self):
        ArtifactCache(self.cache_repository).insert("taco night", "https://cached/taco-night.png")

        response = self.controller.handle(
            GenerationRequest(subject_text="taco   NIGHT", group_id="g1", caller_name="Ana")
        )

        assert response.to_dict() == {
            "artifactURL": "https://cached/taco-night.png",
            "cached": True,
            "budgetExceeded": False,
        }
        assert self.http_requests == []
        self.bucket.blob.assert_not_called()
        assert self.budget_repository.get_state() is None

    def test_scenario_c_budget_within_one_unit_of_cap(self):
        # 24.96 spent: one more image fits exactly
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO budget_state VALUES (?, ?, ?, ?)",
                (LEDGER_ID, 624, "24.96", "2024-01-01T00:00:00+00:00"),
            )
            conn.commit()
        finally:
            conn.close()

        first = self.controller.handle(REQUEST)
        assert first.artifact_url is not None

        second = self.controller.handle(
            GenerationRequest(subject_text="Chili Sunday", group_id="g1", caller_name="Ana")
        )

        assert second.to_dict() == {"artifactURL": None, "cached": False, "budgetExceeded": True}
        assert len(self.http_requests) == 1
        assert self.budget_repository.get_state().total_cost_spent == Decimal("25.00")

    def test_repeat_request_hits_cache_after_generation(self):
        self.controller.handle(REQUEST)
        response = self.controller.handle(
            GenerationRequest(subject_text="Taco night", group_id="g1", caller_name="Ana")
        )

        assert response.cached is True
        assert len(self.http_requests) == 1
        assert self.budget_repository.get_state().units_generated == 1

    def test_stranger_is_rejected(self):
        with pytest.raises(AuthorizationError):
            self.controller.handle(
                GenerationRequest(subject_text="Tacos", group_id="g1", caller_name="Mallory")
            )
        assert self.http_requests == []
        assert self.budget_repository.get_state() is None

    def test_undecodable_generation_response_becomes_error_response(self):
        def handler(request):
            self.http_requests.append(request)
            return httpx.Response(
                200,
                headers={"Content-Encoding": "gzip"},
                stream=httpx.ByteStream(b"not-gzip"),
            )

        self.controller.generator = GeminiImageClient(
            GenerationConfig(),
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

        response = self.controller.handle(
            GenerationRequest(subject_text="Tacos", group_id="g1", caller_name="Ana")
        )

        assert response.artifact_url is None
        assert "Gemini API request failed" in response.error
        assert response.trail[-1] is PipelineState.RESPONDING
        self.bucket.blob.assert_not_called()
        assert self.budget_repository.get_state() is None
        assert self.cache_repository.count("tacos") == 0
