"""MQTT broker session with bounded connect retry and a reconnect sub-state."""
from __future__ import annotations

import asyncio
import enum
import logging
import ssl
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional
from urllib.parse import urlsplit, urlunsplit

from aiomqtt import Client, MqttError
from pydantic import BaseModel, ConfigDict, SecretStr

from bin_agent.errors import CertificateError, ConnectError, PublishError

logger = logging.getLogger(__name__)

SCHEME_ALIASES = {
    "mqtt": "tcp",
    "mqtts": "ssl",
    "tcp": "tcp",
    "ssl": "ssl",
}
DEFAULT_PORTS = {"tcp": 1883, "ssl": 8883}
CONNECT_ATTEMPT_TIMEOUT_SECONDS = 2.0


def normalize_broker_url(url: str) -> str:
    """Map mqtt/mqtts onto tcp/ssl and reject anything else."""

    parts = urlsplit(url.strip())
    scheme = SCHEME_ALIASES.get(parts.scheme.lower())
    if scheme is None:
        raise ValueError(f"Unsupported MQTT scheme {parts.scheme!r} in {url!r}")
    if not parts.hostname:
        raise ValueError(f"MQTT broker URL {url!r} has no host")
    port = parts.port  # raises ValueError on a malformed port
    if port == 0:
        raise ValueError(f"MQTT broker URL {url!r} has no usable port")
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class BrokerIdentity(BaseModel):
    """Everything needed to open a session with the broker."""

    model_config = ConfigDict(frozen=True)

    url: str
    host: str
    port: int
    client_id: str
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    ca_path: Optional[str] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    max_connect_seconds: float = 60.0

    @classmethod
    def from_url(cls, url: str, *, client_id: str, **kwargs: Any) -> "BrokerIdentity":
        normalized = normalize_broker_url(url)
        parts = urlsplit(normalized)
        return cls(
            url=normalized,
            host=parts.hostname or "localhost",
            port=parts.port or DEFAULT_PORTS[parts.scheme],
            client_id=client_id,
            **kwargs,
        )

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme

    @property
    def uses_tls(self) -> bool:
        return self.scheme == "ssl"

    @property
    def address(self) -> str:
        """Broker address without credentials, for logs and errors."""

        return f"{self.scheme}://{self.host}:{self.port}"


def build_tls_context(identity: BrokerIdentity) -> ssl.SSLContext:
    """Load root CAs (system store unless a bundle is given) and the optional client pair."""

    try:
        if identity.ca_path:
            context = ssl.create_default_context(cafile=identity.ca_path)
        else:
            context = ssl.create_default_context()
    except (ssl.SSLError, OSError) as exc:
        raise CertificateError(f"failed to load ca certificate {identity.ca_path}: {exc}") from exc

    if identity.cert_path and identity.key_path:
        try:
            context.load_cert_chain(certfile=identity.cert_path, keyfile=identity.key_path)
        except (ssl.SSLError, OSError) as exc:
            raise CertificateError(
                f"failed to load client certificate {identity.cert_path} / {identity.key_path}: {exc}"
            ) from exc
    return context


@dataclass(frozen=True)
class BackoffPolicy:
    max_elapsed_seconds: float
    initial_interval: float = 1.0
    multiplier: float = 2.0
    max_interval: float = 30.0

    def intervals(self) -> Iterator[float]:
        interval = self.initial_interval
        while True:
            yield interval
            interval = min(interval * self.multiplier, self.max_interval)


ClientFactory = Callable[..., Any]


class MqttConnection:
    """Owns the single broker session shared by every publisher in the process."""

    def __init__(
        self,
        identity: BrokerIdentity,
        *,
        client_factory: ClientFactory = Client,
        attempt_timeout: float = CONNECT_ATTEMPT_TIMEOUT_SECONDS,
        initial_interval: float = 1.0,
        max_interval: float = 30.0,
    ) -> None:
        self.identity = identity
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.policy = BackoffPolicy(
            max_elapsed_seconds=identity.max_connect_seconds,
            initial_interval=initial_interval,
            max_interval=max_interval,
        )
        self._client_factory = client_factory
        self._attempt_timeout = attempt_timeout
        self._client: Any = None
        self._ever_connected = False
        self._reconnect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def connect_with_backoff(self) -> None:
        if self.connected:
            return
        self.state = ConnectionState.CONNECTING
        logger.info("Connecting to MQTT broker %s", self.identity.address)
        try:
            client = await self._connect_with_retry()
        except ConnectError:
            # last_error keeps the cause of the final attempt.
            self.state = ConnectionState.FAILED
            raise
        except CertificateError as exc:
            self.state = ConnectionState.FAILED
            self.last_error = str(exc)
            raise
        self._adopt(client)

    async def publish(self, topic: str, payload: str, *, retain: bool = False) -> None:
        client = self._client
        if self.state is not ConnectionState.CONNECTED or client is None:
            if self.state is ConnectionState.FAILED and self._ever_connected:
                self._start_reconnect()
            raise PublishError(f"cannot publish to {topic}: broker connection is {self.state.value}")
        try:
            await client.publish(topic, payload=payload, qos=0, retain=retain)
        except MqttError as exc:
            self._connection_lost(exc)
            raise PublishError(f"publish to {topic} failed: {exc}") from exc

    async def close(self) -> None:
        task = self._reconnect_task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        client, self._client = self._client, None
        if client is not None:
            await self._close_client(client)
        self.state = ConnectionState.DISCONNECTED

    async def _connect_with_retry(self) -> Any:
        loop = asyncio.get_running_loop()
        started = loop.time()
        attempts = 0
        intervals = self.policy.intervals()
        while True:
            interval = next(intervals)
            attempts += 1
            try:
                return await self._connect_once()
            except (MqttError, OSError) as exc:
                elapsed = loop.time() - started
                self.last_error = str(exc)
                if elapsed + interval > self.policy.max_elapsed_seconds:
                    raise ConnectError(self.identity.address, elapsed, attempts, cause=str(exc)) from exc
                logger.debug(
                    "MQTT connection attempt %s to %s failed: %s; retrying in %.1fs",
                    attempts,
                    self.identity.address,
                    exc,
                    interval,
                )
                await asyncio.sleep(interval)

    async def _connect_once(self) -> Any:
        tls_context = build_tls_context(self.identity)
        password = self.identity.password.get_secret_value() if self.identity.password else None
        client = self._client_factory(
            self.identity.host,
            port=self.identity.port,
            identifier=self.identity.client_id,
            username=self.identity.username,
            password=password,
            tls_context=tls_context if self.identity.uses_tls else None,
            timeout=self._attempt_timeout,
        )
        try:
            await asyncio.wait_for(client.__aenter__(), timeout=self._attempt_timeout)
        except asyncio.TimeoutError as exc:
            await self._discard_half_open(client)
            raise MqttError(
                f"no CONNACK from {self.identity.address} within {self._attempt_timeout}s"
            ) from exc
        except (MqttError, OSError):
            await self._discard_half_open(client)
            raise
        return client

    def _adopt(self, client: Any) -> None:
        self._client = client
        self._ever_connected = True
        self.state = ConnectionState.CONNECTED
        self.last_error = None
        logger.info("Connected to MQTT broker %s", self.identity.address)

    def _connection_lost(self, exc: Exception) -> None:
        self.last_error = str(exc)
        if self.state is not ConnectionState.CONNECTED:
            return
        logger.warning("Lost MQTT session with %s (%s); reconnecting", self.identity.address, exc)
        self._start_reconnect()

    def _start_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self.state = ConnectionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(self._reconnect(), name="mqtt-reconnect")

    async def _reconnect(self) -> None:
        async with self._reconnect_lock:
            stale, self._client = self._client, None
            if stale is not None:
                await self._close_client(stale)
            try:
                client = await self._connect_with_retry()
            except (ConnectError, CertificateError) as exc:
                self.state = ConnectionState.FAILED
                self.last_error = str(exc)
                logger.error("Reconnect to MQTT broker failed: %s", exc)
                return
            except Exception:
                self.state = ConnectionState.FAILED
                logger.exception("Unhandled error while reconnecting to %s", self.identity.address)
                return
            self._adopt(client)

    async def _close_client(self, client: Any) -> None:
        try:
            await client.__aexit__(None, None, None)
        except (MqttError, OSError) as exc:
            logger.debug("Ignoring error while closing MQTT session: %s", exc)

    async def _discard_half_open(self, client: Any) -> None:
        """Close the socket of an attempt that never completed its handshake."""

        try:
            await asyncio.wait_for(client.__aexit__(None, None, None), timeout=self._attempt_timeout)
        except (MqttError, OSError, asyncio.TimeoutError) as exc:
            logger.debug("Ignoring error while discarding MQTT attempt: %s", exc)
        except RuntimeError as exc:
            # aiomqtt already released its connect lock when the attempt failed inside the client.
            logger.debug("MQTT attempt already cleaned up: %s", exc)
