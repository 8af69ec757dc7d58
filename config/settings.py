"""
Configuration loader for message-relay.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from job_queue.errors import QueueConfigurationError

BACKENDS = ("memory", "sqs", "redis")


@dataclass
class QueueConfig:
    backend: str = "memory"                # "memory" for dev, "sqs" or "redis" for production
    queue_url: str = ""                    # SQS queue URL, Redis stream key, or memory:// name
    region: str = "us-east-1"
    endpoint_url: str = ""                 # SQS-compatible endpoint (e.g. a local emulator)
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "relay-workers"
    visibility_timeout: Optional[float] = 30.0  # seconds hidden after receive; null lets SQS decide


@dataclass
class ProducerConfig:
    interval_seconds: float = 5.0
    payload_prefix: str = "Hello from Service A"


@dataclass
class ConsumerConfig:
    poll_interval_seconds: float = 2.0
    wait_seconds: float = 10.0             # long-poll bound
    max_messages: int = 1
    delete_max_attempts: int = 3
    delete_backoff_base: float = 0.5      # exponential backoff multiplier, seconds
    delete_backoff_max: float = 5.0
    dedupe_window: int = 1000              # processed ids remembered; 0 disables


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "message-relay"
    queue: QueueConfig = field(default_factory=QueueConfig)
    producer: ProducerConfig = field(default_factory=ProducerConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> Settings:
        """Raise QueueConfigurationError on values the loops cannot run with."""
        q, p, c = self.queue, self.producer, self.consumer
        if q.backend not in BACKENDS:
            raise QueueConfigurationError(f"queue.backend must be one of {BACKENDS}, got {q.backend!r}")
        if q.backend in ("sqs", "redis") and not q.queue_url:
            raise QueueConfigurationError(f"queue.queue_url is required for the {q.backend} backend")
        if q.visibility_timeout is None:
            if q.backend != "sqs":
                raise QueueConfigurationError(f"queue.visibility_timeout is required for the {q.backend} backend")
        elif q.visibility_timeout <= 0:
            raise QueueConfigurationError("queue.visibility_timeout must be positive")
        if p.interval_seconds <= 0:
            raise QueueConfigurationError("producer.interval_seconds must be positive")
        if c.poll_interval_seconds < 0:
            raise QueueConfigurationError("consumer.poll_interval_seconds must be >= 0")
        if not 0 <= c.wait_seconds <= 20:
            raise QueueConfigurationError("consumer.wait_seconds must be between 0 and 20")
        if not 1 <= c.max_messages <= 10:
            raise QueueConfigurationError("consumer.max_messages must be between 1 and 10")
        if c.delete_max_attempts < 1:
            raise QueueConfigurationError("consumer.delete_max_attempts must be at least 1")
        if c.dedupe_window < 0:
            raise QueueConfigurationError("consumer.dedupe_window must be >= 0")
        return self


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


NULLABLE_KEYS = {"queue.visibility_timeout"}


def _coerce(value: Any, default: Any, key: str) -> Any:
    """Env substitution yields strings; cast them to the field's default type."""
    if key in NULLABLE_KEYS and (value is None or value == ""):
        return None
    if not isinstance(value, str) or isinstance(default, str):
        return value
    try:
        if isinstance(default, bool):
            return value.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, (int, float)):
            return type(default)(value)
    except ValueError as e:
        raise QueueConfigurationError(f"invalid value for {key}: {value!r}") from e
    return value


def _section(cls, raw: dict[str, Any], name: str):
    """Build a config dataclass from one YAML section, ignoring unknown keys."""
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise QueueConfigurationError(f"'{name}' section must be a mapping")
    defaults = cls()
    known = {
        k: _coerce(v, getattr(defaults, k), f"{name}.{k}")
        for k, v in data.items() if k in cls.__dataclass_fields__
    }
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load and validate settings from a YAML file; a missing file gives defaults."""
    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.queue = _section(QueueConfig, raw, "queue")
        settings.producer = _section(ProducerConfig, raw, "producer")
        settings.consumer = _section(ConsumerConfig, raw, "consumer")
        settings.logging = _section(LoggingConfig, raw, "logging")

    return settings.validate()
