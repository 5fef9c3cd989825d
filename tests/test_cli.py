"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from unittest.mock import Mock, patch

import yaml
from typer.testing import CliRunner

from topic_quota_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL, EXIT_CODE_QUOTA
from topic_quota_guard.core.recorder import ConversationRecorder
from topic_quota_guard.storage.repository import LocalTopicLedger

runner = CliRunner()


def _completion(text):
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = text
    return response


class TestCLI:
    """Test CLI commands against a temporary ledger."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "ledger.db")
        self.config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"ledger": {"db_path": self.db_path}, "quota": {"default_allowance": 2}}, f)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _invoke(self, *args):
        return runner.invoke(app, ["--config", self.config_path, *args])

    def _project(self, chat_count=None):
        args = ["create-project", "Demo"]
        if chat_count is not None:
            args += ["--chat-count", str(chat_count)]
        result = self._invoke(*args)
        assert result.exit_code == EXIT_CODE_PASS
        return LocalTopicLedger(self.db_path).list_topics()[-1].topic_id

    def test_no_command_prints_help_hint(self):
        result = self._invoke()
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_status_before_init(self):
        result = self._invoke("status")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No ledger" in result.output

    def test_init_then_status(self):
        result = self._invoke("init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "initialized successfully" in result.output

        result = self._invoke("status")
        assert result.exit_code == EXIT_CODE_PASS
        assert "0 topics" in result.output

    def test_invalid_config(self):
        result = runner.invoke(app, ["--config", os.path.join(self.temp_dir, "missing.yaml"), "status"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_create_project_and_quota(self):
        topic_id = self._project(chat_count=4)

        result = self._invoke("quota", topic_id)

        assert result.exit_code == EXIT_CODE_PASS
        assert "4" in result.output

    def test_create_project_uses_configured_default(self):
        topic_id = self._project()
        ledger = LocalTopicLedger(self.db_path)
        recorder = ConversationRecorder(ledger, ledger)

        assert recorder.topics.get_quota(topic_id).total_allowance == 2

    def test_quota_for_topic_without_project(self):
        self._invoke("init")
        topic_id = LocalTopicLedger(self.db_path).create_topic("bare")

        result = self._invoke("quota", topic_id)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Project not found" in result.output

    def test_quota_for_unknown_topic(self):
        self._invoke("init")

        result = self._invoke("quota", "0.0.9999")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output

    def test_command_before_init(self):
        result = self._invoke("quota", "0.0.1001")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not initialized" in result.output

    @patch('topic_quota_guard.sdk.assistant.OpenAI')
    def test_ask_until_exhausted(self, mock_openai_class):
        """Answers are recorded until the quota refuses with exit code 2."""
        client = Mock()
        client.chat.completions.create.return_value = _completion("Here is an answer")
        mock_openai_class.return_value = client
        topic_id = self._project(chat_count=1)

        result = self._invoke("ask", topic_id, "Hello?")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Here is an answer" in result.output

        result = self._invoke("ask", topic_id, "Again?")
        assert result.exit_code == EXIT_CODE_QUOTA
        assert "Quota exhausted" in result.output
        assert client.chat.completions.create.call_count == 1

    def test_chat_history_and_messages(self):
        topic_id = self._project()
        ledger = LocalTopicLedger(self.db_path)
        ConversationRecorder(ledger, ledger).record_turn(topic_id, "What is a topic?", "A feed")

        result = self._invoke("chat-history", topic_id)
        assert result.exit_code == EXIT_CODE_PASS
        assert "What is a topic?" in result.output
        assert "A feed" in result.output

        result = self._invoke("messages", topic_id)
        assert result.exit_code == EXIT_CODE_PASS
        assert "PROJECT_CREATION" in result.output
        assert "CHAT_TOPIC" in result.output

    def test_chat_history_empty(self):
        topic_id = self._project()

        result = self._invoke("chat-history", topic_id)

        assert result.exit_code == EXIT_CODE_PASS
        assert "No chat messages found" in result.output

    def test_update_quota(self):
        topic_id = self._project()

        result = self._invoke("update-quota", topic_id, "7")

        assert result.exit_code == EXIT_CODE_PASS
        ledger = LocalTopicLedger(self.db_path)
        assert ConversationRecorder(ledger, ledger).topics.get_quota(topic_id).remaining_messages == 7

    def test_update_quota_negative(self):
        topic_id = self._project()

        result = self._invoke("update-quota", topic_id, "--", "-3")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "cannot be negative" in result.output

    def test_add_messages(self):
        topic_id = self._project(chat_count=3)

        result = self._invoke("add-messages", topic_id, "5", "--transaction-id", "0.0.1234@1.2")

        assert result.exit_code == EXIT_CODE_PASS
        assert "3 -> 8 remaining" in result.output

    def test_subscribe_and_subscription(self):
        self._invoke("init")
        license_topic = LocalTopicLedger(self.db_path).create_topic("License")

        result = self._invoke("subscription", license_topic)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No subscription found" in result.output

        result = self._invoke("subscribe", license_topic, "--transaction-id", "0.0.1234@1.3", "--messages", "50")
        assert result.exit_code == EXIT_CODE_PASS

        result = self._invoke("subscription", license_topic)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Subscription active" in result.output
        assert "License NFT" in result.output

    def test_summary(self):
        topic_id = self._project()
        ledger = LocalTopicLedger(self.db_path)
        ConversationRecorder(ledger, ledger).record_turn(topic_id, "Q", "A")

        result = self._invoke("summary", topic_id)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Chat turns: 1" in result.output
        assert "PROJECT_CREATION" in result.output

    def test_mirror_is_read_only(self):
        result = self._invoke("--mirror", "update-quota", "0.0.1001", "3")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "read-only" in result.output
