"""Wire protocol message definitions and JSON framing.

Every frame is a JSON text object ``{"message": <name>, "data": <payload>}``.
Payloads are validated with pydantic models; file content travels as base64.
"""

import base64
import binascii
import json
from typing import Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.exceptions import ProtocolError
from common.types import EntryKind, FsEntry

STATE = "state"
OPERATION = "operation"
CHANGE = "change"
CONTENT_QUERY = "contentQuery"
CONTENT = "content"
OPERATION_ERROR = "operationError"

OperationName = Literal["write", "delete", "mkdir", "rename", "chmod"]
ChangeName = Literal["add", "change", "unlink", "addDir", "unlinkDir", "chmod"]
EntryType = Literal["file", "directory"]


class FsEntryModel(BaseModel):
    """Snapshot entry as sent on the wire."""
    path: str
    type: EntryType
    size: Optional[int] = None

    @classmethod
    def from_entry(cls, entry: FsEntry) -> 'FsEntryModel':
        return cls(path=entry.path, type=entry.kind.value, size=entry.size)

    def to_entry(self) -> FsEntry:
        return FsEntry(path=self.path, kind=EntryKind(self.type), size=self.size)


class StatePayload(BaseModel):
    """Full hub snapshot sent to a newly connected edge."""
    entries: List[FsEntryModel]


class OperationPayload(BaseModel):
    """Mutation submitted by an edge to the hub."""
    model_config = ConfigDict(populate_by_name=True)

    operation: OperationName
    path: str
    content: Optional[str] = None
    new_path: Optional[str] = Field(default=None, alias="newPath")
    mode: Optional[int] = None


class ChangePayload(BaseModel):
    """Mutation broadcast by the hub to edges."""
    event: ChangeName
    path: str
    type: EntryType
    content: Optional[str] = None
    mode: Optional[int] = None


class ContentQueryPayload(BaseModel):
    """Edge request for the bytes of one hub file."""
    path: str


class ContentPayload(BaseModel):
    """Hub answer to a content query."""
    path: str
    content: str


class OperationErrorPayload(BaseModel):
    """Error report sent back to the peer that caused it."""
    message: str
    operation: str
    path: Optional[str] = None


MESSAGE_PAYLOADS: Dict[str, Type[BaseModel]] = {
    STATE: StatePayload,
    OPERATION: OperationPayload,
    CHANGE: ChangePayload,
    CONTENT_QUERY: ContentQueryPayload,
    CONTENT: ContentPayload,
    OPERATION_ERROR: OperationErrorPayload,
}


def encode_content(data: bytes) -> str:
    """Encode raw bytes for a content field."""
    return base64.b64encode(data).decode('ascii')


def decode_content(content: str, operation: str = "unknown", path: Optional[str] = None) -> bytes:
    """
    Decode a base64 content field.

    Raises:
        ProtocolError: If the content is not valid base64
    """
    try:
        return base64.b64decode(content.encode('ascii'), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise ProtocolError(f"Invalid content encoding: {e}", operation, path)


def encode_message(name: str, payload: BaseModel) -> str:
    """
    Serialize a message to a JSON text frame.

    Args:
        name: Message name (one of MESSAGE_PAYLOADS keys)
        payload: Payload model instance

    Returns:
        JSON string
    """
    if name not in MESSAGE_PAYLOADS:
        raise ProtocolError(f"Unknown message: {name}")
    return json.dumps({
        "message": name,
        "data": payload.model_dump(by_alias=True, exclude_none=True),
    })


def decode_message(frame: str) -> Tuple[str, BaseModel]:
    """
    Parse and validate a JSON text frame.

    Args:
        frame: Raw text received from the transport

    Returns:
        Tuple of (message name, payload model)

    Raises:
        ProtocolError: If the frame is malformed or the message is unknown
    """
    try:
        obj = json.loads(frame)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"Malformed frame: {e}")

    if not isinstance(obj, dict) or not isinstance(obj.get("message"), str):
        raise ProtocolError("Frame must be an object with a 'message' field")

    name = obj["message"]
    payload_type = MESSAGE_PAYLOADS.get(name)
    if payload_type is None:
        raise ProtocolError(f"Unknown message: {name}", operation=name)

    try:
        payload = payload_type.model_validate(obj.get("data") or {})
    except ValidationError as e:
        data = obj.get("data")
        path = data.get("path") if isinstance(data, dict) else None
        operation = data.get("operation", name) if isinstance(data, dict) else name
        raise ProtocolError(f"Invalid {name} payload: {e.error_count()} validation error(s)", str(operation), path)

    return name, payload


def state_message(entries: List[FsEntry]) -> StatePayload:
    """Build a state payload from a snapshot."""
    return StatePayload(entries=[FsEntryModel.from_entry(entry) for entry in entries])


def error_message(message: str, operation: str, path: Optional[str] = None) -> OperationErrorPayload:
    """Build an operation error payload."""
    return OperationErrorPayload(message=message, operation=operation, path=path)
