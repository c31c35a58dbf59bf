"""Configuration — Pydantic models for termbroker settings."""

from __future__ import annotations

import json
import os
from typing import Any

from pydantic import BaseModel, Field

from termbroker.policy.rules import AutoApproveRule

DEFAULT_CONFIG_PATH = "~/.termbroker/config.json"


class SessionConfig(BaseModel):
    """How supervised agent sessions are launched and buffered."""

    agent_executable: str = Field(default="claude", description="Agent CLI to run")
    shell: str = Field(
        default_factory=lambda: os.environ.get("SHELL", "/bin/sh"),
        description="Login shell used to resolve the agent on PATH",
    )
    cols: int = Field(default=120)
    rows: int = Field(default=40)
    max_buffer_lines: int = Field(
        default=100, description="Non-empty output lines kept per session"
    )
    max_raw_size: int = Field(
        default=50_000, description="Characters of raw terminal output kept per session"
    )
    prompt_debounce: float = Field(
        default=2.0,
        description="Seconds before a prompt of the same type is announced again",
    )


class ApprovalConfig(BaseModel):
    """Timeouts for pending decisions, in seconds."""

    warning_after: float = Field(default=8 * 60)
    timeout_after: float = Field(
        default=10 * 60, description="Pending approvals are denied after this"
    )
    question_expiry: float = Field(
        default=10 * 60, description="Unsubmitted question sets are discarded after this"
    )


class BrokerConfig(BaseModel):
    """Top-level termbroker configuration."""

    session: SessionConfig = Field(default_factory=SessionConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    rules: list[AutoApproveRule] = Field(
        default_factory=list,
        description="User auto-approve rules, evaluated after the defaults",
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> BrokerConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMBROKER_AGENT             - Agent executable (default: claude)
            TERMBROKER_SHELL             - Shell used to launch the agent
            TERMBROKER_DEBOUNCE          - Prompt debounce window in seconds
            TERMBROKER_APPROVAL_WARNING  - Seconds before the timeout warning
            TERMBROKER_APPROVAL_TIMEOUT  - Seconds before a pending approval is denied
        """
        try:
            from dotenv import find_dotenv, load_dotenv

            load_dotenv(find_dotenv(usecwd=True), override=True)
        except ImportError:
            pass

        config_data: dict[str, Any] = {}

        path = os.path.expanduser(config_path or DEFAULT_CONFIG_PATH)
        if os.path.exists(path):
            with open(path) as f:
                config_data = json.load(f)

        session = config_data.get("session", {})

        env_agent = os.environ.get("TERMBROKER_AGENT")
        if env_agent:
            session["agent_executable"] = env_agent

        env_shell = os.environ.get("TERMBROKER_SHELL")
        if env_shell:
            session["shell"] = env_shell

        env_debounce = os.environ.get("TERMBROKER_DEBOUNCE")
        if env_debounce:
            session["prompt_debounce"] = float(env_debounce)

        if session:
            config_data["session"] = session

        approval = config_data.get("approval", {})

        env_warning = os.environ.get("TERMBROKER_APPROVAL_WARNING")
        if env_warning:
            approval["warning_after"] = float(env_warning)

        env_timeout = os.environ.get("TERMBROKER_APPROVAL_TIMEOUT")
        if env_timeout:
            approval["timeout_after"] = float(env_timeout)

        if approval:
            config_data["approval"] = approval

        return cls.model_validate(config_data)
