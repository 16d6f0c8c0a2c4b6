"""
Wire messages exchanged with synthesis clients.

Inbound frames are decoded into a closed set of variants so the dispatcher can
route them without looking at raw dictionaries:

    SynthesisRequest     - a well-formed "request_synthesis" message
    InvalidRequest       - "request_synthesis" with a bad shape
    UnrecognizedMessage  - valid JSON with any other (or no) type
    MalformedMessage     - not JSON at all
"""
import json
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from icestorm_server.errors import DecodeError

REQUEST_SYNTHESIS = "request_synthesis"

# Verilog identifier without "$": TOP_MODULE is handed to make, which expands
# $X and $(...) in command-line variables.
TOP_MODULE_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


# =============================================================================
# INBOUND
# =============================================================================

class SourceFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    body: str


class SynthesisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["request_synthesis"] = REQUEST_SYNTHESIS
    top_module: str = Field(min_length=1, pattern=TOP_MODULE_PATTERN)
    files: List[SourceFile] = Field(min_length=1)


@dataclass(frozen=True)
class InvalidRequest:
    detail: str


@dataclass(frozen=True)
class UnrecognizedMessage:
    type: Any


@dataclass(frozen=True)
class MalformedMessage:
    error: DecodeError


InboundMessage = Union[SynthesisRequest, InvalidRequest, UnrecognizedMessage, MalformedMessage]


def decode_message(raw: Union[str, bytes]) -> InboundMessage:
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        return MalformedMessage(DecodeError(f"Unable to parse JSON: {e}"))

    if not isinstance(data, dict):
        return UnrecognizedMessage(type=None)

    msg_type = data.get("type")
    if msg_type != REQUEST_SYNTHESIS:
        return UnrecognizedMessage(type=msg_type)

    try:
        return SynthesisRequest.model_validate(data)
    except ValidationError as e:
        return InvalidRequest(detail=_summarize_validation_error(e))


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


# =============================================================================
# OUTBOUND
# =============================================================================

class BitstreamResponse(BaseModel):
    type: Literal["bitstream"] = "bitstream"
    # Raw bytes travel as a JSON array of 0-255 integers.
    bitstream: List[int]

    @classmethod
    def from_bytes(cls, data: bytes) -> "BitstreamResponse":
        return cls(bitstream=list(data))


class SynthesisErrorResponse(BaseModel):
    type: Literal["synthesis_error"] = "synthesis_error"
    error: str
    detail: str = ""
    exit_code: Optional[int] = None
    log: str = ""


class JsonErrorResponse(BaseModel):
    type: Literal["JSON_Error"] = "JSON_Error"


Response = Union[BitstreamResponse, SynthesisErrorResponse]
