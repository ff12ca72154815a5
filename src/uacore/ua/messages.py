"""Wire messages exchanged between the client core and a server.

Three envelope kinds travel over a channel:
- RequestMessage: client -> server, carries a locally generated request id
- ResponseMessage: server -> client, echoes the request id it answers
- NotificationMessage: server -> client, an unsolicited monitored item sample

Service bodies are pydantic models discriminated by their `service` field.
Frames are UTF-8 encoded JSON documents.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from uacore.ua.types import (
    GOOD,
    AttributeId,
    DataValue,
    ReferenceDescription,
    StatusCode,
    TimestampsToReturn,
)


class _Body(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Requests ---


class GetEndpointsRequest(_Body):
    service: Literal["GetEndpoints"] = "GetEndpoints"
    endpoint_url: str


class CreateSessionRequest(_Body):
    service: Literal["CreateSession"] = "CreateSession"
    session_name: str
    endpoint_url: str
    requested_session_timeout: float


class ActivateSessionRequest(_Body):
    service: Literal["ActivateSession"] = "ActivateSession"


class CloseSessionRequest(_Body):
    service: Literal["CloseSession"] = "CloseSession"
    delete_subscriptions: bool = True


class BrowseRequest(_Body):
    service: Literal["Browse"] = "Browse"
    node_id: str


class ReadRequest(_Body):
    service: Literal["Read"] = "Read"
    node_id: str
    attribute_id: AttributeId = AttributeId.Value
    timestamps_to_return: TimestampsToReturn = TimestampsToReturn.Both


class WriteRequest(_Body):
    service: Literal["Write"] = "Write"
    node_id: str
    attribute_id: AttributeId = AttributeId.Value
    value: DataValue


class CreateSubscriptionRequest(_Body):
    service: Literal["CreateSubscription"] = "CreateSubscription"
    requested_publishing_interval: float
    requested_lifetime_count: int
    requested_max_keep_alive_count: int
    max_notifications_per_publish: int
    publishing_enabled: bool
    priority: int


class SetPublishingModeRequest(_Body):
    service: Literal["SetPublishingMode"] = "SetPublishingMode"
    subscription_ids: list[int]
    publishing_enabled: bool


class DeleteSubscriptionsRequest(_Body):
    service: Literal["DeleteSubscriptions"] = "DeleteSubscriptions"
    subscription_ids: list[int]


class CreateMonitoredItemRequest(_Body):
    service: Literal["CreateMonitoredItem"] = "CreateMonitoredItem"
    subscription_id: int
    node_id: str
    attribute_id: AttributeId = AttributeId.Value
    sampling_interval: float
    queue_size: int
    discard_oldest: bool
    deadband: float | None
    timestamps_to_return: TimestampsToReturn


class DeleteMonitoredItemsRequest(_Body):
    service: Literal["DeleteMonitoredItems"] = "DeleteMonitoredItems"
    subscription_id: int
    monitored_item_ids: list[int]


class PublishRequest(_Body):
    service: Literal["Publish"] = "Publish"
    subscription_id: int


ServiceRequest = Annotated[
    Union[
        GetEndpointsRequest,
        CreateSessionRequest,
        ActivateSessionRequest,
        CloseSessionRequest,
        BrowseRequest,
        ReadRequest,
        WriteRequest,
        CreateSubscriptionRequest,
        SetPublishingModeRequest,
        DeleteSubscriptionsRequest,
        CreateMonitoredItemRequest,
        DeleteMonitoredItemsRequest,
        PublishRequest,
    ],
    Field(discriminator="service"),
]


# --- Responses ---


class GetEndpointsResponse(_Body):
    service: Literal["GetEndpointsResponse"] = "GetEndpointsResponse"
    endpoints: list[str]
    server_name: str = ""


class CreateSessionResponse(_Body):
    service: Literal["CreateSessionResponse"] = "CreateSessionResponse"
    session_id: int
    authentication_token: str
    revised_session_timeout: float


class ActivateSessionResponse(_Body):
    service: Literal["ActivateSessionResponse"] = "ActivateSessionResponse"


class CloseSessionResponse(_Body):
    service: Literal["CloseSessionResponse"] = "CloseSessionResponse"


class BrowseResponse(_Body):
    service: Literal["BrowseResponse"] = "BrowseResponse"
    status: StatusCode = GOOD
    references: list[ReferenceDescription] = Field(default_factory=list)


class ReadResponse(_Body):
    service: Literal["ReadResponse"] = "ReadResponse"
    value: DataValue


class WriteResponse(_Body):
    service: Literal["WriteResponse"] = "WriteResponse"
    status: StatusCode


class CreateSubscriptionResponse(_Body):
    service: Literal["CreateSubscriptionResponse"] = "CreateSubscriptionResponse"
    subscription_id: int
    revised_publishing_interval: float
    revised_lifetime_count: int
    revised_max_keep_alive_count: int


class SetPublishingModeResponse(_Body):
    service: Literal["SetPublishingModeResponse"] = "SetPublishingModeResponse"
    results: list[StatusCode]


class DeleteSubscriptionsResponse(_Body):
    service: Literal["DeleteSubscriptionsResponse"] = "DeleteSubscriptionsResponse"
    results: list[StatusCode]


class CreateMonitoredItemResponse(_Body):
    service: Literal["CreateMonitoredItemResponse"] = "CreateMonitoredItemResponse"
    status: StatusCode
    monitored_item_id: int = 0
    revised_sampling_interval: float = 0.0
    revised_queue_size: int = 0


class DeleteMonitoredItemsResponse(_Body):
    service: Literal["DeleteMonitoredItemsResponse"] = "DeleteMonitoredItemsResponse"
    results: list[StatusCode]


class PublishResponse(_Body):
    service: Literal["PublishResponse"] = "PublishResponse"
    subscription_id: int


ServiceResponse = Annotated[
    Union[
        GetEndpointsResponse,
        CreateSessionResponse,
        ActivateSessionResponse,
        CloseSessionResponse,
        BrowseResponse,
        ReadResponse,
        WriteResponse,
        CreateSubscriptionResponse,
        SetPublishingModeResponse,
        DeleteSubscriptionsResponse,
        CreateMonitoredItemResponse,
        DeleteMonitoredItemsResponse,
        PublishResponse,
    ],
    Field(discriminator="service"),
]


# --- Envelopes ---


class RequestMessage(BaseModel):
    """A request with its header fields.

    Attributes:
        request_id: Correlation id chosen by the client
        authentication_token: Session token, None before a session exists
        timeout_hint: Client side timeout for this request (ms)
        body: The service request
    """

    kind: Literal["request"] = "request"
    request_id: int
    authentication_token: str | None = None
    timeout_hint: float = 0.0
    body: ServiceRequest


class ResponseMessage(BaseModel):
    """A response; `body` is None when the service result is bad."""

    kind: Literal["response"] = "response"
    request_id: int
    service_result: StatusCode = GOOD
    body: Optional[ServiceResponse] = None


class NotificationMessage(BaseModel):
    """A data change sample for one monitored item."""

    kind: Literal["notification"] = "notification"
    session_id: int
    subscription_id: int
    monitored_item_id: int
    value: DataValue


Message = Annotated[
    Union[RequestMessage, ResponseMessage, NotificationMessage],
    Field(discriminator="kind"),
]

_message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def encode(message: RequestMessage | ResponseMessage | NotificationMessage) -> bytes:
    """Serialize an envelope into a frame."""
    return message.model_dump_json().encode("utf-8")


def decode(frame: bytes) -> RequestMessage | ResponseMessage | NotificationMessage:
    """Parse a frame into an envelope.

    Raises:
        pydantic.ValidationError: If the frame is not a valid envelope
    """
    return _message_adapter.validate_json(frame)


def service_name(body: BaseModel) -> str:
    return getattr(body, "service", type(body).__name__)
