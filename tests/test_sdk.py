"""
Unit tests for SDK layer.

Tests the charged OpenAI story client against a real credit store.
"""

import os
import shutil
import tempfile
from unittest.mock import Mock, patch

import pytest

from tale_forge_credits.config.loader import default_credit_config
from tale_forge_credits.core.coordinator import CreditCoordinator
from tale_forge_credits.core.errors import SubscriptionRequired, WorkFailed
from tale_forge_credits.sdk.openai_client import ChargedStoryClient
from tale_forge_credits.storage.models import SubscriptionTier, TransactionReason
from tale_forge_credits.storage.repository import initialize_schema


def _completion(text, response_id="chatcmpl-1"):
    response = Mock()
    response.id = response_id
    response.choices = [Mock()]
    response.choices[0].message.content = text
    return response


class TestChargedStoryClient:
    """Test ChargedStoryClient wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.coordinator = CreditCoordinator.from_config(default_credit_config(), self.db_path)
        self.coordinator.open_account("user-1", SubscriptionTier.STARTER)
        self.mock_client = Mock()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch('tale_forge_credits.sdk.openai_client.OpenAI')
    def test_init_default_client(self, mock_openai_class):
        """Test a default OpenAI client is created when none is given."""
        mock_openai_class.return_value = Mock()

        client = ChargedStoryClient(self.coordinator)

        assert client.model == "gpt-4o-mini"
        assert client.tts_model == "tts-1"
        assert client.client is mock_openai_class.return_value

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            ChargedStoryClient(self.coordinator, model="", client=self.mock_client)

        with pytest.raises(ValueError, match="tts_model is required"):
            ChargedStoryClient(self.coordinator, tts_model=" ", client=self.mock_client)

    def test_generate_segment(self):
        """Test a segment is generated and counted without a deduction."""
        self.mock_client.chat.completions.create.return_value = _completion("Once upon a time")
        client = ChargedStoryClient(self.coordinator, client=self.mock_client)

        messages = [{"role": "user", "content": "Begin the story"}]
        result = client.generate_segment("user-1", "req-1", messages, temperature=0.7)

        self.mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4o-mini",
            messages=messages,
            temperature=0.7
        )
        assert result.artifact.id == "req-1"
        assert result.artifact.payload == "Once upon a time"
        assert result.artifact.metadata["response_id"] == "chatcmpl-1"
        assert result.cost == 0
        assert result.new_balance == 100

    def test_generate_segment_empty_messages(self):
        """Test empty messages raises error before any work."""
        client = ChargedStoryClient(self.coordinator, client=self.mock_client)

        with pytest.raises(ValueError, match="messages is required"):
            client.generate_segment("user-1", "req-1", [])
        self.mock_client.chat.completions.create.assert_not_called()

    def test_generate_segment_empty_response_not_charged(self):
        """Test a completion without text is a failed generation."""
        self.mock_client.chat.completions.create.return_value = _completion("")
        client = ChargedStoryClient(self.coordinator, client=self.mock_client)

        with pytest.raises(WorkFailed, match="no story text"):
            client.generate_segment("user-1", "req-1", [{"role": "user", "content": "Go"}])

    def test_narrate_charges_by_word_count(self):
        """Test narration is priced by the narrated text."""
        self.mock_client.audio.speech.create.return_value = Mock(content=b"mp3-bytes")
        client = ChargedStoryClient(self.coordinator, client=self.mock_client)

        text = " ".join(["word"] * 250)
        result = client.narrate("user-1", "seg-1", text, voice="nova")

        self.mock_client.audio.speech.create.assert_called_once_with(
            model="tts-1",
            voice="nova",
            input=text
        )
        assert result.artifact.payload == b"mp3-bytes"
        assert result.cost == 3
        assert result.new_balance == 97

        tx = self.coordinator.store.find_transaction("user-1", "seg-1", TransactionReason.AUDIO)
        assert tx.amount == -3
        assert tx.metadata == {"operation": "audio", "cost": 3, "voice": "nova"}

    def test_narrate_retry_charged_once(self):
        """Test narrating the same segment again does not charge twice."""
        self.mock_client.audio.speech.create.return_value = Mock(content=b"mp3-bytes")
        client = ChargedStoryClient(self.coordinator, client=self.mock_client)

        text = " ".join(["word"] * 120)
        first = client.narrate("user-1", "seg-1", text)
        second = client.narrate("user-1", "seg-1", text)

        assert first.replayed is False
        assert second.replayed is True
        assert second.new_balance == 98
        assert self.coordinator.store.get_balance("user-1") == 98

    def test_openai_failure_not_charged(self):
        """Test OpenAI API failure surfaces as WorkFailed and charges nothing."""
        self.mock_client.audio.speech.create.side_effect = Exception("API Error")
        client = ChargedStoryClient(self.coordinator, client=self.mock_client)

        with pytest.raises(WorkFailed) as excinfo:
            client.narrate("user-1", "seg-1", "a short line")

        assert str(excinfo.value.underlying_error) == "API Error"
        assert self.coordinator.store.get_balance("user-1") == 100
        assert list(self.coordinator.store.list_transactions("user-1")) == []

    def test_narrate_requires_subscription(self):
        """Test free accounts cannot narrate and OpenAI is never called."""
        self.coordinator.open_account("user-2")
        client = ChargedStoryClient(self.coordinator, client=self.mock_client)

        with pytest.raises(SubscriptionRequired):
            client.narrate("user-2", "seg-1", "a short line")
        self.mock_client.audio.speech.create.assert_not_called()
