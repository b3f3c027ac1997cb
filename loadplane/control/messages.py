"""
Inbound channel message models.

A channel body is a JSON envelope {testId, messageType, messageData}.
Status kinds (TestStatus, TestError, TestFinished, TestFailed) carry a
status report as messageData and decode to StatusEvent; every other
kind decodes to ControlEvent and is only logged by the dispatcher.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .entities import TestStatus
from .errors import ValidationError


class MessageType(str, Enum):
    """Message kinds exchanged between controller and agents."""

    STOP_TEST = "StopTest"
    KILL_TEST = "KillTest"
    TEST_STATUS = "TestStatus"
    TEST_ERROR = "TestError"
    TEST_FAILED = "TestFailed"
    TEST_FINISHED = "TestFinished"
    UNIT_TEST = "UnitTest"
    UPDATE_YAML = "UpdateYaml"


STATUS_MESSAGE_TYPES = frozenset({
    MessageType.TEST_STATUS,
    MessageType.TEST_ERROR,
    MessageType.TEST_FINISHED,
    MessageType.TEST_FAILED,
})

# Kinds that always move the test out of the Running tier
TERMINAL_MESSAGE_TYPES = frozenset({MessageType.TEST_FINISHED, MessageType.TEST_FAILED})


class EventKind(str, Enum):
    STATUS = "status"
    CONTROL = "control"


class StatusReport(BaseModel):
    """Status fields an agent reports for a test."""

    model_config = ConfigDict(populate_by_name=True)

    start_time: int = Field(..., alias="startTime")
    end_time: int = Field(..., alias="endTime")
    status: TestStatus
    results_filename: list[str] = Field(default_factory=list, alias="resultsFilename")
    instance_id: Optional[str] = Field(default=None, alias="instanceId")
    hostname: Optional[str] = None
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")
    errors: Optional[list[str]] = None
    version: Optional[str] = None
    queue_name: Optional[str] = Field(default=None, alias="queueName")
    user_id: Optional[str] = Field(default=None, alias="userId")


class ChannelEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    test_id: str = Field(..., alias="testId", min_length=1)
    message_type: str = Field(..., alias="messageType")
    message_data: Any = Field(default=None, alias="messageData")


class StatusEvent(BaseModel):
    kind: Literal["status"] = "status"
    test_id: str
    message_type: MessageType
    report: StatusReport


class ControlEvent(BaseModel):
    kind: Literal["control"] = "control"
    test_id: str
    message_type: str
    data: Any = None


ChannelEvent = Annotated[Union[StatusEvent, ControlEvent], Field(discriminator="kind")]

_channel_event_adapter = TypeAdapter(ChannelEvent)


def decode_message(body: str | bytes) -> StatusEvent | ControlEvent:
    """
    Decode a channel body into a tagged event.

    Raises:
        ValidationError: If the body is not a valid envelope, or a status
            kind carries an invalid status report
    """
    try:
        envelope = ChannelEnvelope.model_validate_json(body)
        if envelope.message_type in {t.value for t in STATUS_MESSAGE_TYPES}:
            return _channel_event_adapter.validate_python({
                "kind": EventKind.STATUS.value,
                "test_id": envelope.test_id,
                "message_type": envelope.message_type,
                "report": envelope.message_data,
            })
        return _channel_event_adapter.validate_python({
            "kind": EventKind.CONTROL.value,
            "test_id": envelope.test_id,
            "message_type": envelope.message_type,
            "data": envelope.message_data,
        })
    except PydanticValidationError as e:
        raise ValidationError(f"Undecodable channel message: {e}", field="body") from e


def encode_message(test_id: str, message_type: MessageType | str, data: Any = None) -> str:
    """Encode a channel envelope as JSON."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    envelope = ChannelEnvelope(
        test_id=test_id,
        message_type=message_type.value if isinstance(message_type, MessageType) else message_type,
        message_data=data,
    )
    return envelope.model_dump_json(by_alias=True)
