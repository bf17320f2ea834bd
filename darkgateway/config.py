"""
Client configuration loaded from YAML.

Example config.yaml:
    gateway:
      uri: ws://localhost:8888
      timeout: 10
      reclaim: keep
      print_traffic: false
      log_level: INFO
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import yaml

from .io.correlation import ReclaimPolicy
from .exceptions import GatewayConfigurationError


@dataclass
class GatewayConfig:
    uri: str
    timeout: Optional[float] = None
    reclaim_policy: ReclaimPolicy = ReclaimPolicy.KEEP
    print_traffic: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "GatewayConfig":
        """Build a config from the 'gateway' section (or a bare section)"""
        if not isinstance(config, dict):
            raise GatewayConfigurationError("Config must be a mapping")
        section = config.get("gateway", config)
        if not isinstance(section, dict):
            raise GatewayConfigurationError("'gateway' section must be a mapping")

        uri = section.get("uri")
        if not isinstance(uri, str) or not uri.startswith(("ws://", "wss://")):
            raise GatewayConfigurationError(f"Missing or invalid gateway uri: {uri!r}")

        timeout = section.get("timeout")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise GatewayConfigurationError(f"timeout must be a positive number, got {timeout!r}")
            timeout = float(timeout)

        reclaim = section.get("reclaim", ReclaimPolicy.KEEP.value)
        try:
            reclaim_policy = ReclaimPolicy(reclaim)
        except ValueError:
            choices = ", ".join(p.value for p in ReclaimPolicy)
            raise GatewayConfigurationError(f"reclaim must be one of {choices}, got {reclaim!r}") from None

        log_level = str(section.get("log_level", "INFO")).upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise GatewayConfigurationError(f"Unknown log_level: {log_level}")

        return cls(
            uri=uri,
            timeout=timeout,
            reclaim_policy=reclaim_policy,
            print_traffic=bool(section.get("print_traffic", False)),
            log_level=log_level,
        )

    @classmethod
    def load(cls, path: str) -> "GatewayConfig":
        """Load a config from a YAML file"""
        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except OSError as e:
            raise GatewayConfigurationError(f"Cannot read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise GatewayConfigurationError(f"Invalid YAML in {path}: {e}") from e
        return cls.from_dict(config or {})

    def client_options(self) -> dict[str, Any]:
        """Keyword arguments for GatewayConnection.create()"""
        return {
            "default_timeout": self.timeout,
            "reclaim_policy": self.reclaim_policy,
            "print_traffic": self.print_traffic,
        }
