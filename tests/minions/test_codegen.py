"""Tests for the agent environment, stream parsing and AgentInvoker."""

import json
import stat
import time

import pytest

from minions.agent_auth import AgentAuth
from minions.codegen import (
    AGENT_FLAGS,
    AgentInvoker,
    build_agent_environment,
    parse_stream_line,
    sandbox_environment,
)
from minions.config import ProcessEnvironment
from minions.events import EventLog, EventType, RecordingSink
from minions.exceptions import AgentInvocationError

SNAPSHOT = ProcessEnvironment(
    {
        "HOME": "/home/worker",
        "PATH": "/usr/bin:/bin",
        "NEXT_PUBLIC_API": "https://api.test",
        "ANTHROPIC_API_KEY": "sk-ant-api03-worker-key",
        "SUPABASE_SERVICE_KEY": "service",
        "CLAUDECODE": "1",
    }
)


class TestEnvironments:
    """Restricted versus full agent environments."""

    def test_sandbox_environment(self):
        """Install and validation commands see no worker secrets."""
        env = sandbox_environment(SNAPSHOT, ["NEXT_PUBLIC_*"]).as_dict()
        assert env == {
            "HOME": "/home/worker",
            "PATH": "/usr/bin:/bin",
            "NEXT_PUBLIC_API": "https://api.test",
            "CI": "true",
        }

    def test_restricted_with_oauth(self):
        """Restricted mode adds NODE_ENV and the OAuth variable only."""
        env = build_agent_environment(SNAPSHOT, AgentAuth("oauth", "oauth-token"), restricted=True).as_dict()
        assert env["CLAUDE_CODE_OAUTH_TOKEN"] == "oauth-token"
        assert env["NODE_ENV"] == "production"
        assert "ANTHROPIC_API_KEY" not in env
        assert "SUPABASE_SERVICE_KEY" not in env

    def test_full_with_oauth_drops_api_key(self):
        """Full mode keeps the environment but avoids mixed auth."""
        env = build_agent_environment(SNAPSHOT, AgentAuth("oauth", "oauth-token"), restricted=False).as_dict()
        assert "CLAUDECODE" not in env
        assert "ANTHROPIC_API_KEY" not in env
        assert env["SUPABASE_SERVICE_KEY"] == "service"
        assert env["CI"] == "true"

    def test_full_with_api_key(self):
        """The resolved key replaces whatever the snapshot had."""
        env = build_agent_environment(SNAPSHOT, AgentAuth("api_key", "resolved-key"), restricted=False).as_dict()
        assert env["ANTHROPIC_API_KEY"] == "resolved-key"


class TestParseStreamLine:
    """stream-json records to events."""

    def test_tool_use_and_text(self):
        """Tool calls are summarized; text is previewed."""
        line = json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Edit", "input": {"file_path": "src/Navbar.tsx"}},
                        {"type": "text", "text": "Done editing."},
                    ]
                },
            }
        )
        assert parse_stream_line(line) == [
            ("Editing src/Navbar.tsx", {"kind": "tool_use", "tool": "Edit"}),
            ("[agent] Done editing.", {"kind": "text"}),
        ]

    def test_other_record_types_ignored(self):
        """System and result records produce nothing."""
        assert parse_stream_line(json.dumps({"type": "system", "subtype": "init"})) == []
        assert parse_stream_line("   ") == []

    def test_malformed_blocks_skipped(self):
        """Non-dict messages, blocks and inputs are ignored, not fatal."""
        assert parse_stream_line(json.dumps({"type": "assistant", "message": "hi"})) == []
        assert parse_stream_line(json.dumps({"type": "assistant", "message": {"content": "hi"}})) == []
        line = json.dumps(
            {
                "type": "assistant",
                "message": {"content": ["text", 3, {"type": "tool_use", "name": "Read", "input": "x"}]},
            }
        )
        assert parse_stream_line(line) == [("Reading file", {"kind": "tool_use", "tool": "Read"})]

    def test_non_json_forwarded_raw(self):
        """Plain output lines are kept."""
        assert parse_stream_line("npm WARN deprecated") == [("[raw] npm WARN deprecated", {"kind": "raw"})]


def _fake_agent(tmp_path, body):
    script = tmp_path / "fake-claude"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


@pytest.fixture
def agent_env():
    return ProcessEnvironment({"PATH": "/usr/bin:/bin"})


class TestAgentInvoker:
    """Running a real child process in place of the agent CLI."""

    def test_success_streams_events(self, tmp_path, agent_env):
        """stdout records become AGENT_OUTPUT events, flags are passed."""
        record = json.dumps(
            {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Bash", "input": {"command": "ls"}}]}}
        )
        executable = _fake_agent(tmp_path, f"echo \"$@\" > args.txt\necho '{record}'\nexit 0\n")
        sink = RecordingSink()

        AgentInvoker(executable, EventLog("job-1", [sink])).invoke("do the thing", tmp_path, 10, agent_env)

        assert sink.types()[0] == EventType.GENERATION_STARTED
        assert sink.types()[-1] == EventType.GENERATION_COMPLETED
        assert [e.message for e in sink.of_type(EventType.AGENT_OUTPUT)] == ["Running: ls"]
        args = (tmp_path / "args.txt").read_text()
        assert " ".join(AGENT_FLAGS) in args
        assert args.strip().endswith("-p do the thing")

    def test_nonzero_exit(self, tmp_path, agent_env):
        """A failing agent raises with its stderr tail."""
        executable = _fake_agent(tmp_path, "echo 'rate limited' >&2\nexit 2\n")
        with pytest.raises(AgentInvocationError) as exc_info:
            AgentInvoker(executable).invoke("p", tmp_path, 10, agent_env)
        assert exc_info.value.exit_code == 2
        assert "rate limited" in exc_info.value.stderr_tail

    def test_timeout_kills_agent(self, tmp_path, agent_env):
        """An agent over budget is killed and reported as timed out."""
        executable = _fake_agent(tmp_path, "exec sleep 30\n")
        with pytest.raises(AgentInvocationError) as exc_info:
            AgentInvoker(executable).invoke("p", tmp_path, 1, agent_env)
        assert exc_info.value.timed_out

    def test_timeout_kills_background_children(self, tmp_path, agent_env):
        """Children holding stdout open do not stretch the budget."""
        executable = _fake_agent(tmp_path, "sleep 20 &\nsleep 20\n")
        started = time.monotonic()
        with pytest.raises(AgentInvocationError) as exc_info:
            AgentInvoker(executable).invoke("p", tmp_path, 1, agent_env)
        assert exc_info.value.timed_out
        assert time.monotonic() - started < 10

    def test_missing_executable(self, tmp_path, agent_env):
        """An agent that cannot start is exit 127."""
        with pytest.raises(AgentInvocationError) as exc_info:
            AgentInvoker(str(tmp_path / "nope")).invoke("p", tmp_path, 10, agent_env)
        assert exc_info.value.exit_code == 127

    def test_prompt_not_in_error(self, tmp_path, agent_env):
        """Failures show the prompt length, not the prompt."""
        executable = _fake_agent(tmp_path, "exit 1\n")
        with pytest.raises(AgentInvocationError) as exc_info:
            AgentInvoker(executable).invoke("secret plan", tmp_path, 10, agent_env)
        assert "secret plan" not in str(exc_info.value)
