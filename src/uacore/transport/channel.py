"""Transport channel: one logical connection to one endpoint.

The channel owns the physical link, establishes it with bounded exponential
backoff, correlates responses to requests by request id, and re-establishes
the link in the background after an unexpected loss.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> FAULTED (link lost) -> CONNECTED (reconnected)
    FAULTED -> DISCONNECTED (reconnect strategy exhausted)
    any -> DISCONNECTED (disconnect())
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
from collections.abc import Callable
from enum import Enum

import structlog
from pydantic import BaseModel, ValidationError

from uacore.core.config import ClientConfig
from uacore.core.errors import (
    ConnectionClosed,
    ConnectionLost,
    EndpointNotFound,
    RequestTimeout,
    TransportError,
    Unreachable,
)
from uacore.core.events import (
    BackoffEvent,
    ChannelClosedEvent,
    ChannelStateChanged,
    ConnectionLostEvent,
    EventEmitter,
    ReconnectedEvent,
)
from uacore.transport.link import Connector, Link, open_tcp_link
from uacore.ua.messages import (
    GetEndpointsRequest,
    GetEndpointsResponse,
    NotificationMessage,
    RequestMessage,
    ResponseMessage,
    decode,
    encode,
    service_name,
)

logger = structlog.get_logger(__name__)


class ChannelState(str, Enum):
    """Connection state of a Channel."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"


def _normalize_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


class Channel(EventEmitter):
    """A single request/response channel to an endpoint.

    Many requests may be in flight at once; each carries a locally generated
    request id and its response is routed back by that id, in whatever order
    the server answers. Unsolicited notifications are re-emitted as
    "notification" events.

    Events:
        backoff: BackoffEvent before each sleep between attempts
        state_changed: ChannelStateChanged on every transition
        connection_lost: ConnectionLostEvent when a live link drops
        reconnected: ReconnectedEvent after a successful background reconnect
        closed: ChannelClosedEvent when the channel is released for good
        notification: NotificationMessage pushed by the server

    Example:
        >>> channel = Channel("opc.tcp://localhost:4840", ClientConfig())
        >>> await channel.connect()
        >>> response = await channel.send(ReadRequest(node_id="ns=1;s=Temperature"))
        >>> await channel.disconnect()
    """

    events = frozenset(
        {
            "backoff",
            "state_changed",
            "connection_lost",
            "reconnected",
            "closed",
            "notification",
        }
    )

    def __init__(
        self,
        endpoint: str,
        config: ClientConfig | None = None,
        connector: Connector | None = None,
    ):
        """Initialize a disconnected channel.

        Args:
            endpoint: Endpoint URL; fixed for the lifetime of the channel
            config: Client configuration (strategy, timeouts)
            connector: Coroutine function opening a Link to an URL; defaults
                to TCP
        """
        super().__init__()
        self._endpoint = endpoint
        self._config = config or ClientConfig()
        self._connector = connector or open_tcp_link
        self._state = ChannelState.DISCONNECTED
        self._link: Link | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[ResponseMessage]] = {}
        self._request_ids = itertools.count(1)
        self._send_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        # Set by disconnect(); every connect attempt captures the current one.
        self._closing = asyncio.Event()
        self.server_name = ""

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ChannelState.CONNECTED

    @property
    def pending_requests(self) -> int:
        """Number of requests currently waiting for a response."""
        return len(self._pending)

    # --- Connection lifecycle ---

    async def connect(self) -> None:
        """Connect, retrying per the connection strategy.

        Concurrent callers share one attempt: a call made while another is
        connecting waits for it and returns once the channel is connected.

        Raises:
            EndpointNotFound: endpoint_must_exist is set and the server does
                not advertise the endpoint (not retried)
            Unreachable: every attempt allowed by max_retry failed
            ConnectionClosed: disconnect() was called before the attempt
                finished
        """
        async with self._connect_lock:
            if self._state == ChannelState.CONNECTED:
                return
            await self._cancel_reconnect()
            await self._connect_with_retry(reconnecting=False)
        logger.info("channel_connected", endpoint=self._endpoint)

    async def disconnect(self) -> None:
        """Release the link and fail in-flight requests with ConnectionClosed.

        A connect() still in progress stops at its next step and raises
        ConnectionClosed; its backoff sleep ends immediately.

        Safe to call multiple times; only the first call emits "closed".
        """
        if (
            self._state == ChannelState.DISCONNECTED
            and self._link is None
            and self._reconnect_task is None
        ):
            return

        logger.info("channel_disconnecting", endpoint=self._endpoint)
        self._closing.set()
        self._closing = asyncio.Event()
        await self._cancel_reconnect()
        await self._release_link(
            lambda: ConnectionClosed(f"channel to {self._endpoint} was closed")
        )
        self._set_state(ChannelState.DISCONNECTED)
        self.emit("closed", ChannelClosedEvent(endpoint=self._endpoint, reason="disconnect"))

    # --- Request/response ---

    async def send(
        self,
        body: BaseModel,
        *,
        authentication_token: str | None = None,
        timeout: float | None = None,
    ) -> ResponseMessage:
        """Send a service request and wait for its response.

        Args:
            body: Service request model
            authentication_token: Session token for the request header
            timeout: Per-request timeout in ms; defaults to request_timeout

        Returns:
            The correlated response (its service_result may be bad)

        Raises:
            ConnectionClosed: The channel is not connected or was closed
                while waiting
            ConnectionLost: The link dropped before the response arrived
            RequestTimeout: No response within the timeout
        """
        if self._state == ChannelState.FAULTED:
            raise ConnectionLost(f"channel to {self._endpoint} is reconnecting")
        if self._state != ChannelState.CONNECTED:
            raise ConnectionClosed(f"channel to {self._endpoint} is {self._state.value}")
        return await self._exchange(body, authentication_token, timeout)

    async def _exchange(
        self,
        body: BaseModel,
        authentication_token: str | None = None,
        timeout: float | None = None,
    ) -> ResponseMessage:
        link = self._link
        if link is None:
            raise ConnectionClosed(f"channel to {self._endpoint} has no link")

        timeout = self._config.request_timeout if timeout is None else timeout
        request_id = next(self._request_ids)
        future: asyncio.Future[ResponseMessage] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = RequestMessage(
            request_id=request_id,
            authentication_token=authentication_token,
            timeout_hint=timeout,
            body=body,
        )
        try:
            try:
                async with self._send_lock:
                    await link.send(encode(message))
            except (ConnectionError, OSError) as e:
                raise ConnectionLost(f"sending {service_name(body)} failed: {e}") from e

            try:
                return await asyncio.wait_for(future, timeout / 1000)
            except asyncio.TimeoutError:
                logger.warning(
                    "channel_request_timeout",
                    endpoint=self._endpoint,
                    request_id=request_id,
                    service=service_name(body),
                    timeout=timeout,
                )
                raise RequestTimeout(request_id, service_name(body), timeout) from None
        finally:
            self._pending.pop(request_id, None)

    # --- Internal methods ---

    async def _connect_with_retry(self, reconnecting: bool) -> int:
        """Attempt to open the link until success or the strategy gives up.

        Returns:
            Number of attempts used
        """
        strategy = self._config.connection_strategy
        closing = self._closing
        attempt = 0
        while True:
            attempt += 1
            if not reconnecting:
                self._set_state(ChannelState.CONNECTING)
            logger.info(
                "channel_connect_attempt",
                endpoint=self._endpoint,
                attempt=attempt,
                reconnecting=reconnecting,
            )
            try:
                await self._open(closing)
                return attempt
            except EndpointNotFound:
                self._set_state(ChannelState.DISCONNECTED)
                raise
            except (OSError, asyncio.TimeoutError, TransportError) as e:
                if closing.is_set():
                    raise self._aborted() from e
                logger.warning(
                    "channel_connect_failed",
                    endpoint=self._endpoint,
                    attempt=attempt,
                    error=str(e) or type(e).__name__,
                )
                if not strategy.infinite and attempt >= strategy.max_retry:
                    self._set_state(ChannelState.DISCONNECTED)
                    raise Unreachable(self._endpoint, attempt) from e

                delay = strategy.delay_for(attempt)
                self.emit(
                    "backoff",
                    BackoffEvent(
                        endpoint=self._endpoint,
                        attempt=attempt,
                        delay=delay,
                        error=str(e) or type(e).__name__,
                    ),
                )
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(closing.wait(), delay / 1000)
                if closing.is_set():
                    raise self._aborted() from e

    def _aborted(self) -> ConnectionClosed:
        logger.info("channel_connect_aborted", endpoint=self._endpoint)
        return ConnectionClosed(f"channel to {self._endpoint} was closed while connecting")

    async def _open(self, closing: asyncio.Event) -> None:
        """Open one link and perform the endpoint handshake."""
        connect_timeout = self._config.connect_timeout
        link = await asyncio.wait_for(self._connector(self._endpoint), connect_timeout / 1000)
        if closing.is_set():
            with contextlib.suppress(ConnectionError, OSError):
                await link.close()
            raise ConnectionClosed(f"channel to {self._endpoint} was closed while connecting")
        self._link = link
        self._reader_task = asyncio.create_task(self._read_loop(link))
        try:
            response = await self._exchange(
                GetEndpointsRequest(endpoint_url=self._endpoint),
                timeout=connect_timeout,
            )
            body = response.body
            endpoints = body.endpoints if isinstance(body, GetEndpointsResponse) else []
            if self._config.endpoint_must_exist:
                advertised = {_normalize_url(url) for url in endpoints}
                if _normalize_url(self._endpoint) not in advertised:
                    raise EndpointNotFound(self._endpoint, endpoints)
            if isinstance(body, GetEndpointsResponse):
                self.server_name = body.server_name
            if closing.is_set():
                raise ConnectionClosed(f"channel to {self._endpoint} was closed while connecting")
        except BaseException:
            # disconnect() or a link loss may already have released it
            if self._link is link:
                await self._release_link(
                    lambda: ConnectionClosed(f"handshake with {self._endpoint} failed")
                )
            raise
        self._set_state(ChannelState.CONNECTED)

    async def _read_loop(self, link: Link) -> None:
        """Route incoming frames until the link fails or the task is cancelled."""
        try:
            while True:
                frame = await link.receive()
                self._dispatch(frame)
        except (ConnectionError, OSError) as e:
            if link is self._link:
                await self._handle_link_lost(e)

    def _dispatch(self, frame: bytes) -> None:
        try:
            message = decode(frame)
        except ValidationError as e:
            logger.error("channel_bad_frame", endpoint=self._endpoint, error=str(e))
            return

        if isinstance(message, ResponseMessage):
            future = self._pending.pop(message.request_id, None)
            if future is None:
                logger.warning(
                    "channel_unmatched_response",
                    endpoint=self._endpoint,
                    request_id=message.request_id,
                )
                return
            if not future.done():
                future.set_result(message)
        elif isinstance(message, NotificationMessage):
            self.emit("notification", message)
        else:
            logger.warning(
                "channel_unexpected_message",
                endpoint=self._endpoint,
                kind=message.kind,
            )

    async def _handle_link_lost(self, error: Exception) -> None:
        was_connected = self._state == ChannelState.CONNECTED
        link = self._link
        self._link = None
        self._reader_task = None
        failed = self._fail_pending(
            lambda: ConnectionLost(f"connection to {self._endpoint} lost: {error}")
        )
        if link is not None:
            with contextlib.suppress(ConnectionError, OSError):
                await link.close()

        if not was_connected:
            # Lost during the handshake; the connect loop handles it.
            return

        logger.warning(
            "channel_connection_lost",
            endpoint=self._endpoint,
            error=str(error),
            failed_requests=failed,
        )
        self._set_state(ChannelState.FAULTED)
        self.emit(
            "connection_lost",
            ConnectionLostEvent(
                endpoint=self._endpoint, error=str(error), failed_requests=failed
            ),
        )
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        """Background reconnection after an unexpected loss."""
        try:
            attempts = await self._connect_with_retry(reconnecting=True)
        except (Unreachable, EndpointNotFound) as e:
            logger.error(
                "channel_reconnect_exhausted",
                endpoint=self._endpoint,
                error=str(e),
            )
            self._reconnect_task = None
            self.emit(
                "closed",
                ChannelClosedEvent(endpoint=self._endpoint, reason="reconnect_exhausted"),
            )
            return

        self._reconnect_task = None
        logger.info("channel_reconnected", endpoint=self._endpoint, attempts=attempts)
        self.emit("reconnected", ReconnectedEvent(endpoint=self._endpoint, attempts=attempts))

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _release_link(self, make_error: Callable[[], Exception]) -> None:
        """Stop reading, fail in-flight requests and close the link."""
        reader = self._reader_task
        link = self._link
        self._reader_task = None
        self._link = None

        if reader and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        self._fail_pending(make_error)

        if link is not None:
            try:
                await link.close()
            except (ConnectionError, OSError) as e:
                logger.warning("channel_link_close_error", endpoint=self._endpoint, error=str(e))

    def _fail_pending(self, make_error: Callable[[], Exception]) -> int:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(make_error())
        return len(pending)

    def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.debug(
            "channel_state_changed",
            endpoint=self._endpoint,
            previous=previous.value,
            current=state.value,
        )
        self.emit(
            "state_changed",
            ChannelStateChanged(
                endpoint=self._endpoint, previous=previous.value, current=state.value
            ),
        )
