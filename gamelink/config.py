"""Connection manager configuration."""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True, slots=True)
class ConnectionManagerConfig:
	"""Tunables captured when a :class:`~gamelink.connection.ConnectionManager` is built.

	Durations are milliseconds.
	"""

	connection_timeout: float = 8000
	max_retries: int = 5
	initial_retry_delay: float = 1000
	max_retry_delay: float = 5000
	enable_auto_reconnect: bool = True
	log_to_server: bool = True

	def __post_init__(self) -> None:
		if self.connection_timeout <= 0:
			raise ValueError("connection_timeout must be positive")
		if self.max_retries < 0:
			raise ValueError("max_retries must not be negative")
		if self.initial_retry_delay <= 0:
			raise ValueError("initial_retry_delay must be positive")
		if self.max_retry_delay < self.initial_retry_delay:
			raise ValueError("max_retry_delay must be >= initial_retry_delay")

	@classmethod
	def field_names(cls) -> frozenset[str]:
		return frozenset(item.name for item in fields(cls))

	def with_overrides(self, overrides: Optional[Mapping[str, Any]] = None, **extra: Any) -> "ConnectionManagerConfig":
		changes = dict(overrides or {})
		changes.update(extra)
		# None means "keep the default" so CLI/API layers can pass optionals through
		changes = {key: value for key, value in changes.items() if value is not None}
		unknown = set(changes) - self.field_names()
		if unknown:
			raise ValueError(f"unknown config option(s): {', '.join(sorted(unknown))}")
		if not changes:
			return self
		return replace(self, **changes)


DEFAULT_CONFIG = ConnectionManagerConfig()

ConfigLike = Union[ConnectionManagerConfig, Mapping[str, Any], None]


def resolve_config(config: ConfigLike = None, **overrides: Any) -> ConnectionManagerConfig:
	"""Merge a partial override (mapping or instance) onto the defaults."""
	if isinstance(config, ConnectionManagerConfig):
		base = config
	else:
		base = DEFAULT_CONFIG.with_overrides(config)
	return base.with_overrides(overrides)


__all__ = ["ConnectionManagerConfig", "ConfigLike", "DEFAULT_CONFIG", "resolve_config"]
