"""
Gateway wire-level envelopes.

This module implements the JSON message shapes exchanged with the gateway.

Terms:
- Request = A JSON object sent by the client: {"id", "command", "params"}
- Response = The single reply to a Request: {"id", "error", "result"}
- Update = A push for a subscribed address: {"name": "update", "address", ...}
- Key = The value used to match an inbound envelope to its handler

Example usage:
    req = Request(id=7, command="fetch_last_height", params=())
    wire = req.to_json()   # '{"id": 7, "command": "fetch_last_height", "params": []}'
    envelope = parse_frame('{"id": 7, "error": null, "result": [12345]}')
    envelope.value         # 12345
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from ..exceptions import MalformedFrameError


# Constants
class EnvelopeConst:
    """Constants for the wire format"""
    UPDATE_NAME = "update"
    TOPIC_FIELD = "address"
    TOPIC_PREFIX = "update."
    ID_LIMIT = 2 ** 32


# Correlation keys
@dataclass(frozen=True)
class RequestKey:
    """Key of a one-shot request, the numeric id sent on the wire"""
    id: int

    def __str__(self) -> str:
        return f"request {self.id}"


@dataclass(frozen=True)
class TopicKey:
    """Key of a subscription, derived from the subscribed address"""
    name: str

    @classmethod
    def for_target(cls, target: str) -> "TopicKey":
        return cls(EnvelopeConst.TOPIC_PREFIX + target)

    def __str__(self) -> str:
        return f"topic {self.name}"


CorrelationKey = RequestKey | TopicKey


# Envelope classes
@dataclass(frozen=True)
class Request:
    """Represents a request to be sent to the gateway"""
    id: int
    command: str
    params: Sequence[Any] = ()

    def __post_init__(self):
        if not isinstance(self.command, str) or not self.command:
            raise ValueError("Request.command must be a non-empty string")
        if not 0 <= self.id < EnvelopeConst.ID_LIMIT:
            raise ValueError(f"Request.id must fit in 32 bits, got {self.id}")
        # Freeze params so the envelope can't change between build and send
        object.__setattr__(self, "params", tuple(self.params))

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.id)

    def to_dict(self) -> dict:
        return {"id": self.id, "command": self.command, "params": list(self.params)}

    def to_json(self) -> str:
        """Convert request to wire format"""
        return json.dumps(self.to_dict())


@dataclass
class Response:
    """Represents the reply to a single request"""
    id: int
    error: Any = None
    result: list = field(default_factory=list)
    raw: Optional[dict] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.id)

    @property
    def value(self) -> Any:
        """The payload, result[0], or None when the result is empty"""
        return self.result[0] if self.result else None


@dataclass
class Update:
    """Represents a push for a subscribed address"""
    address: str
    payload: dict
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> TopicKey:
        return TopicKey.for_target(self.address)


Envelope = Response | Update


def parse_frame(data: str | bytes) -> Envelope:
    """
    Decode one inbound frame into a Response or an Update.

    Raises MalformedFrameError if the frame is not JSON, or is JSON of the
    wrong shape. Nothing else is raised.
    """
    try:
        obj = json.loads(data)
    except (TypeError, ValueError) as e:
        raise MalformedFrameError(f"Frame is not valid JSON: {e}", data) from e

    if not isinstance(obj, dict):
        raise MalformedFrameError(f"Frame must be a JSON object, got {type(obj).__name__}", data)

    # Update pushes carry a name tag and no id
    if obj.get("name") == EnvelopeConst.UPDATE_NAME:
        address = obj.get(EnvelopeConst.TOPIC_FIELD)
        if not isinstance(address, str):
            raise MalformedFrameError(f"Update frame has no '{EnvelopeConst.TOPIC_FIELD}' string", data)
        return Update(address=address, payload=obj)

    request_id = obj.get("id")
    if isinstance(request_id, bool) or not isinstance(request_id, int):
        raise MalformedFrameError("Response frame has no integer 'id'", data)

    result = obj.get("result")
    if result is None:
        result = []
    elif not isinstance(result, list):
        raise MalformedFrameError(f"Response 'result' must be a list, got {type(result).__name__}", data)

    return Response(id=request_id, error=obj.get("error"), result=result, raw=obj)
