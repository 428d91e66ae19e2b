from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ErrorCode:
    TERMINAL_CREATE_FAILED = "TERMINAL_CREATE_FAILED"
    NO_TERMINAL = "NO_TERMINAL"
    BAD_MESSAGE = "BAD_MESSAGE"
    OUTPUT_OVERFLOW = "OUTPUT_OVERFLOW"


# client -> server


class CreateTerminal(BaseModel):
    type: Literal["create-terminal"] = "create-terminal"
    shell: str = Field(default="")
    cols: int = Field(default=80, gt=0)
    rows: int = Field(default=24, gt=0)
    cwd: str = Field(default="")

    model_config = ConfigDict(extra="ignore")


class TerminalInput(BaseModel):
    type: Literal["terminal-input"] = "terminal-input"
    data: str = Field(default="")

    model_config = ConfigDict(extra="ignore")


class TerminalResize(BaseModel):
    type: Literal["terminal-resize"] = "terminal-resize"
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)

    model_config = ConfigDict(extra="ignore")


ClientMessage = Annotated[Union[CreateTerminal, TerminalInput, TerminalResize], Field(discriminator="type")]
CLIENT_MESSAGE = TypeAdapter(ClientMessage)


# server -> client


class _ServerEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class TerminalCreated(_ServerEvent):
    type: Literal["terminal-created"] = "terminal-created"
    id: str
    shell: str
    cwd: str
    cols: int
    rows: int


class TerminalOutput(_ServerEvent):
    """Output chunk; travels as a binary frame, never as JSON."""

    type: Literal["terminal-output"] = "terminal-output"
    data: bytes


class TerminalExit(_ServerEvent):
    type: Literal["terminal-exit"] = "terminal-exit"
    exit_code: int = Field(alias="exitCode")
    signal: Optional[int] = None


class TerminalError(_ServerEvent):
    type: Literal["terminal-error"] = "terminal-error"
    error: str
    code: str


ServerEvent = Union[TerminalCreated, TerminalOutput, TerminalExit, TerminalError]
