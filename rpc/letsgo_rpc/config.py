"""RPC endpoint configuration loading and validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .client import RpcClient
from .transcoder import TRANSCODERS
from .transport import HTTPTransport, Transport
from .websocket import DEFAULT_RECONNECT_DELAY, DEFAULT_TIMEOUT, WebSocketTransport

SUPPORTED_TRANSPORTS = ("http", "websocket")


@dataclass
class EndpointConfig:
    """Configuration for a single RPC endpoint.

    Attributes:
        name: Endpoint name (dict key from config).
        transport: ``"http"`` or ``"websocket"``.
        url: Endpoint URL.
        headers: Extra request / handshake headers.
        timeout: Call timeout in seconds. ``None`` means no HTTP timeout and
            the WebSocket default; ``0`` disables the WebSocket timeout.
        reconnect_delay: WebSocket reconnect delay in seconds (``0`` disables).
        transcoder: ``"identity"`` or ``"tagged-json"``.
    """

    name: str
    transport: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    transcoder: str = "identity"


def load_endpoint_configs(config: dict[str, Any]) -> dict[str, EndpointConfig]:
    """Parse the ``rpc.endpoints`` config section into :class:`EndpointConfig` objects.

    Args:
        config: The full config dict.  Expected shape::

            {"rpc": {"endpoints": {"name": {"transport": "...", "url": "...", ...}}}}

    Returns:
        A mapping of endpoint name → :class:`EndpointConfig`.

    Raises:
        ValueError: If ``url`` is missing or a transport/transcoder is unknown.
    """
    endpoints_raw = (config.get("rpc") or {}).get("endpoints") or {}
    configs: dict[str, EndpointConfig] = {}

    for name, spec in endpoints_raw.items():
        transport = spec.get("transport", "http")
        if transport not in SUPPORTED_TRANSPORTS:
            msg = (
                f"RPC endpoint '{name}': unknown transport '{transport}'. "
                f"Supported: {', '.join(SUPPORTED_TRANSPORTS)}"
            )
            raise ValueError(msg)

        url = spec.get("url")
        if not url:
            msg = f"RPC endpoint '{name}': {transport} transport requires 'url'"
            raise ValueError(msg)

        transcoder = spec.get("transcoder", "identity")
        if transcoder not in TRANSCODERS:
            msg = (
                f"RPC endpoint '{name}': unknown transcoder '{transcoder}'. "
                f"Supported: {', '.join(TRANSCODERS)}"
            )
            raise ValueError(msg)

        configs[name] = EndpointConfig(
            name=name,
            transport=transport,
            url=url,
            headers=spec.get("headers", {}),
            timeout=spec.get("timeout"),
            reconnect_delay=spec.get("reconnect_delay", DEFAULT_RECONNECT_DELAY),
            transcoder=transcoder,
        )

    return configs


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load a YAML config file. An empty file yields ``{}``."""
    import yaml

    return yaml.safe_load(Path(path).expanduser().read_text()) or {}


def create_transport(cfg: EndpointConfig, **kwargs: Any) -> Transport:
    """Build the transport described by *cfg*; *kwargs* go to its constructor."""
    if cfg.transport == "websocket":
        timeout = DEFAULT_TIMEOUT if cfg.timeout is None else cfg.timeout
        return WebSocketTransport(
            cfg.url,
            timeout=timeout,
            reconnect_delay=cfg.reconnect_delay,
            headers=cfg.headers or None,
            **kwargs,
        )
    return HTTPTransport(cfg.url, headers=cfg.headers or None, timeout=cfg.timeout, **kwargs)


def create_client(cfg: EndpointConfig, **kwargs: Any) -> RpcClient:
    """Build an :class:`RpcClient` for *cfg*; *kwargs* go to the transport."""
    return RpcClient(create_transport(cfg, **kwargs), transcoder=TRANSCODERS[cfg.transcoder])
