#tests\test_intents.py

"""Test free-text command parsing into typed bot intents."""

import pytest

from hft_control.control.intents import BotIntent, is_destructive, parse_command
from hft_control.core.errors import StateError


class TestParseCommand:

    @pytest.mark.parametrize("command,intent", [
        ("start", BotIntent.START),
        ("  STOP ", BotIntent.STOP),
        ("please restart the bot", BotIntent.RESTART),
        ("docker compose up -d", BotIntent.START),
        ("docker compose down", BotIntent.STOP),
        ("docker ps", BotIntent.STATUS),
        ("show me the logs", BotIntent.LOGS),
        ("tail", BotIntent.LOGS),
    ])
    def test_known_commands(self, command, intent):
        assert parse_command(command) == intent

    def test_restart_wins_over_start(self):
        """Test 'restart' is not read as 'start'."""
        assert parse_command("restart and start again") == BotIntent.RESTART

    @pytest.mark.parametrize("command", [
        "rm -rf /",
        "sudo rm -rf /*",
        "rm --no-preserve-root -r /",
        "mkfs.ext4 /dev/sda1",
        "dd if=/dev/zero of=/dev/sda",
        ":(){ :|:& };:",
        "shutdown -h now",
        "start && docker system prune -af",
    ])
    def test_destructive_refused(self, command):
        """Test destructive patterns are refused even when a verb is present."""
        with pytest.raises(StateError) as exc_info:
            parse_command(command)
        assert exc_info.value.reason == "destructive_command"

    def test_rm_of_a_file_is_not_destructive(self):
        assert is_destructive("rm -f /tmp/bot.log") is False

    @pytest.mark.parametrize("command", ["", "   ", None, "make me money"])
    def test_unknown(self, command):
        with pytest.raises(StateError) as exc_info:
            parse_command(command)
        assert exc_info.value.reason == "unknown_command"

    def test_state_changing_intents(self):
        assert {i for i in BotIntent if i.changes_state} == {BotIntent.START, BotIntent.STOP, BotIntent.RESTART}
