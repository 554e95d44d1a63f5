"""
Worker IPC 消息类型（封闭的 tagged-variant 集合）。

说明：
- 以 `type` 字段为 discriminator；带连字符的字段（如 `config-type`）通过 alias 映射；
- 入站消息（worker → host）在 router 里一次性校验；未知 `type` 或字段不合法的消息被丢弃；
- 出站消息（host → worker）用 `to_wire()` 序列化为 dict（按 alias 输出、省略 None）。
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        """序列化为线上 dict（alias 字段名；None 字段省略）。"""

        return self.model_dump(by_alias=True, exclude_none=True)


# ---- inbound (worker -> host) ----


class StartJackin(_Message):
    type: Literal["start-jackin"] = "start-jackin"


class StopJackin(_Message):
    type: Literal["stop-jackin"] = "stop-jackin"


class ExecuteCommand(_Message):
    type: Literal["execute-command"] = "execute-command"
    command: str
    args: Optional[List[Any]] = None


class WebviewMessage(_Message):
    type: Literal["webview-message"] = "webview-message"
    message: Any = None


class Notification(_Message):
    """编辑器通知；level 取 `info` / `warn` / `error`，其它值按 `info` 展示。"""

    type: Literal["notification"] = "notification"
    level: str = "info"
    message: str


class CheckFileExists(_Message):
    type: Literal["check-file-exists"] = "check-file-exists"
    filename: str
    config_type: str = Field(alias="config-type")


class CheckDirsExist(_Message):
    type: Literal["check-dirs-exist"] = "check-dirs-exist"
    dirs: List[str] = Field(default_factory=list)
    config_type: str = Field(alias="config-type")


class ResolveDependencies(_Message):
    type: Literal["resolve-dependencies"] = "resolve-dependencies"
    config_type: str = Field(alias="config-type")
    command: str
    description: Optional[str] = None


class GetWorkspaceInfo(_Message):
    type: Literal["get-workspace-info"] = "get-workspace-info"


InboundMessage = Annotated[
    Union[
        StartJackin,
        StopJackin,
        ExecuteCommand,
        WebviewMessage,
        Notification,
        CheckFileExists,
        CheckDirsExist,
        ResolveDependencies,
        GetWorkspaceInfo,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES: tuple[type[_Message], ...] = (
    StartJackin,
    StopJackin,
    ExecuteCommand,
    WebviewMessage,
    Notification,
    CheckFileExists,
    CheckDirsExist,
    ResolveDependencies,
    GetWorkspaceInfo,
)

_INBOUND_ADAPTER: TypeAdapter[Any] = TypeAdapter(InboundMessage)


def parse_inbound(obj: Dict[str, Any]) -> _Message:
    """
    把已解码的 JSON object 校验为入站消息。

    异常：
    - pydantic.ValidationError：未知 `type`、缺少字段或字段类型不合法
    """

    return _INBOUND_ADAPTER.validate_python(obj)


# ---- outbound (host -> worker) ----


class JackinSuccess(_Message):
    type: Literal["jackin-success"] = "jackin-success"
    port: int


class ReplConnectionError(_Message):
    type: Literal["repl-connection-error"] = "repl-connection-error"
    error: str
    cancelled: Optional[bool] = None
    instructions: Optional[str] = None


class JackinStopped(_Message):
    type: Literal["jackin-stopped"] = "jackin-stopped"
    message: str
    cancelled: Optional[bool] = None


class ConfigDetected(_Message):
    type: Literal["config-detected"] = "config-detected"
    config_type: str = Field(alias="config-type")
    exists: bool


class DirsChecked(_Message):
    type: Literal["dirs-checked"] = "dirs-checked"
    config_type: str = Field(alias="config-type")
    resolved: bool


class ResolutionComplete(_Message):
    type: Literal["resolution-complete"] = "resolution-complete"
    config_type: str = Field(alias="config-type")
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None


class FileChange(_Message):
    """依赖描述文件变化；`changeType` 为 `created` / `changed` / `deleted`。"""

    type: Literal["file-change"] = "file-change"
    filename: str
    full_path: str = Field(alias="fullPath")
    change_type: Literal["created", "changed", "deleted"] = Field(alias="changeType")


class WorkspaceFolderInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    uri: str
    fs_path: str = Field(alias="fsPath")


class ActiveEditorInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    language_id: str = Field(alias="languageId")


class WorkspaceInfo(_Message):
    """`activeEditor` 没有活动文件时为 null（始终输出该字段）。"""

    type: Literal["workspace-info"] = "workspace-info"
    folders: List[WorkspaceFolderInfo] = Field(default_factory=list)
    active_editor: Optional[ActiveEditorInfo] = Field(default=None, alias="activeEditor")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


OutboundMessage = Union[
    JackinSuccess,
    ReplConnectionError,
    JackinStopped,
    ConfigDetected,
    DirsChecked,
    ResolutionComplete,
    FileChange,
    WorkspaceInfo,
]
