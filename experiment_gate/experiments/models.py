"""
实验领域模型

- RawExperiment：远程配置中的原始实验（pydantic 解析，字段缺省宽松）
- Experiment：运行期的实验（id / enabled / state / action）
- ExperimentStorageState：持久化在 `experiments.<id>` 下的状态，按字段逐一兜底
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class ExperimentState(IntEnum):
    EVALUATING = 0
    NO_RUN = 1
    RUN = 2
    COMPLETE = 3


class ExperimentActionType(str, Enum):
    CUSTOM = "Custom"
    PROMPT = "Prompt"
    ADD_TO_RECOMMENDATIONS = "AddToRecommendations"

    @classmethod
    def parse(cls, value: Any) -> "ExperimentActionType":
        """未知类型一律按 Custom 处理"""
        for member in cls:
            if member.value == value:
                return member
        return cls.CUSTOM


# ========================================
# 原始配置（远程 JSON）
# ========================================
# 可选字段类型不对时视为未配置（该条件放行），不影响整条实验
def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _bool_or_none(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _str_list_or_none(value: Any) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    return [x for x in value if isinstance(x, str)]


def _dict_or_none(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


class _RawModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RawInstalledExtensions(_RawModel):
    includes: Optional[list[str]] = None
    excludes: Optional[list[str]] = None

    _lists = field_validator("includes", "excludes", mode="before")(_str_list_or_none)


class RawFileEdits(_RawModel):
    file_path_pattern: Optional[str] = Field(default=None, alias="filePathPattern")
    workspace_includes: Optional[list[str]] = Field(default=None, alias="workspaceIncludes")
    workspace_excludes: Optional[list[str]] = Field(default=None, alias="workspaceExcludes")
    # 非数字时不启用文件编辑条件
    min_edit_count: Optional[float] = Field(default=None, alias="minEditCount")

    _pattern = field_validator("file_path_pattern", mode="before")(_str_or_none)
    _lists = field_validator("workspace_includes", "workspace_excludes", mode="before")(
        _str_list_or_none
    )
    _count = field_validator("min_edit_count", mode="before")(_number_or_none)


class RawCondition(_RawModel):
    insiders_only: Optional[bool] = Field(default=None, alias="insidersOnly")
    display_language: Optional[str] = Field(default=None, alias="displayLanguage")
    installed_extensions: Optional[RawInstalledExtensions] = Field(
        default=None, alias="installedExtensions"
    )
    file_edits: Optional[RawFileEdits] = Field(default=None, alias="fileEdits")
    user_probability: Optional[float] = Field(default=None, alias="userProbability")
    evaluate_only_once: Optional[bool] = Field(default=None, alias="evaluateOnlyOnce")

    _flags = field_validator("insiders_only", "evaluate_only_once", mode="before")(_bool_or_none)
    _language = field_validator("display_language", mode="before")(_str_or_none)
    _nested = field_validator("installed_extensions", "file_edits", mode="before")(_dict_or_none)
    _probability = field_validator("user_probability", mode="before")(_number_or_none)


class RawAction(_RawModel):
    type: Optional[str] = None
    properties: Any = None

    _type = field_validator("type", mode="before")(_str_or_none)


class RawExperiment(_RawModel):
    """只有 id 缺失或不是字符串时整条作废"""

    id: str
    enabled: bool = False
    condition: Optional[RawCondition] = None
    action: Optional[RawAction] = None

    _nested = field_validator("condition", "action", mode="before")(_dict_or_none)

    @field_validator("id", mode="before")
    @classmethod
    def _require_str_id(cls, value: Any) -> Any:
        if not isinstance(value, str):
            raise ValueError("id must be a string")
        return value

    @field_validator("enabled", mode="before")
    @classmethod
    def _truthy_enabled(cls, value: Any) -> bool:
        return bool(value)


def parse_raw_experiments(items: list[Any]) -> list[RawExperiment]:
    """逐条解析；单条格式错误时跳过，不影响其它实验"""
    result: list[RawExperiment] = []
    for item in items:
        try:
            result.append(RawExperiment.model_validate(item))
        except ValidationError as exc:
            logger.warning(f"跳过格式错误的实验配置: {item!r}, err={exc.error_count()} errors")
    return result


# ========================================
# 实验动作（按类型区分的强类型载荷）
# ========================================
@dataclass
class PromptCommand:
    text: str
    external_link: Optional[str] = None
    dont_show_again: bool = False
    curated_extensions_key: Optional[str] = None
    curated_extensions_list: Optional[list[str]] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PromptCommand"]:
        if not isinstance(data, dict):
            return None
        curated_list = data.get("curatedExtensionsList")
        return cls(
            text=str(data.get("text") or ""),
            external_link=data.get("externalLink") if isinstance(data.get("externalLink"), str) else None,
            dont_show_again=bool(data.get("dontShowAgain", False)),
            curated_extensions_key=data.get("curatedExtensionsKey") or None,
            curated_extensions_list=(
                [str(x) for x in curated_list] if isinstance(curated_list, list) else None
            ),
        )

    @property
    def declares_curated_list(self) -> bool:
        return bool(self.curated_extensions_key) and self.curated_extensions_list is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"text": self.text}
        if self.external_link is not None:
            data["externalLink"] = self.external_link
        if self.dont_show_again:
            data["dontShowAgain"] = True
        if self.curated_extensions_key:
            data["curatedExtensionsKey"] = self.curated_extensions_key
        if self.curated_extensions_list is not None:
            data["curatedExtensionsList"] = list(self.curated_extensions_list)
        return data


@dataclass
class CustomAction:
    properties: dict[str, Any] = field(default_factory=dict)
    type: ExperimentActionType = field(default=ExperimentActionType.CUSTOM, init=False)

    def properties_dict(self) -> dict[str, Any]:
        return dict(self.properties)


@dataclass
class PromptAction:
    prompt: str = ""
    commands: list[PromptCommand] = field(default_factory=list)
    type: ExperimentActionType = field(default=ExperimentActionType.PROMPT, init=False)

    def curated_command(self) -> Optional[PromptCommand]:
        """返回声明了精选扩展列表的命令（多个时取最后一个）"""
        found = None
        for command in self.commands:
            if command.declares_curated_list:
                found = command
        return found

    def properties_dict(self) -> dict[str, Any]:
        return {"prompt": self.prompt, "commands": [c.to_dict() for c in self.commands]}


@dataclass
class AddToRecommendationsAction:
    properties: dict[str, Any] = field(default_factory=dict)
    type: ExperimentActionType = field(
        default=ExperimentActionType.ADD_TO_RECOMMENDATIONS, init=False
    )

    @property
    def recommendations(self) -> list[str]:
        value = self.properties.get("recommendations")
        if not isinstance(value, list):
            return []
        return [x for x in value if isinstance(x, str)]

    def properties_dict(self) -> dict[str, Any]:
        return dict(self.properties)


ExperimentAction = Union[CustomAction, PromptAction, AddToRecommendationsAction]


def build_action(raw: Optional[RawAction]) -> Optional[ExperimentAction]:
    if raw is None:
        return None
    action_type = ExperimentActionType.parse(raw.type)
    properties = raw.properties if isinstance(raw.properties, dict) else {}

    if action_type is ExperimentActionType.PROMPT:
        commands = []
        for item in properties.get("commands") or []:
            command = PromptCommand.from_dict(item)
            if command is not None:
                commands.append(command)
        return PromptAction(prompt=str(properties.get("prompt") or ""), commands=commands)
    if action_type is ExperimentActionType.ADD_TO_RECOMMENDATIONS:
        return AddToRecommendationsAction(properties=dict(properties))
    return CustomAction(properties=dict(properties))


# ========================================
# 运行期实验
# ========================================
@dataclass
class Experiment:
    id: str
    enabled: bool
    state: ExperimentState
    action: Optional[ExperimentAction] = None

    @property
    def is_prompt(self) -> bool:
        return self.action is not None and self.action.type is ExperimentActionType.PROMPT

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "enabled": self.enabled,
            "state": int(self.state),
        }
        if self.action is not None:
            data["action"] = {
                "type": self.action.type.value,
                "properties": self.action.properties_dict(),
            }
        return data


# ========================================
# 持久化状态
# ========================================
@dataclass
class ExperimentStorageState:
    enabled: Optional[bool] = None
    state: Optional[ExperimentState] = None
    edit_count: Optional[int] = None
    last_edited_date: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExperimentStorageState":
        return cls(
            enabled=data["enabled"] if isinstance(data.get("enabled"), bool) else None,
            state=_to_state_or_none(data.get("state")),
            edit_count=_to_int_or_none(data.get("editCount")),
            last_edited_date=(
                data["lastEditedDate"] if isinstance(data.get("lastEditedDate"), str) else None
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.enabled is not None:
            data["enabled"] = self.enabled
        if self.state is not None:
            data["state"] = int(self.state)
        if self.edit_count is not None:
            data["editCount"] = self.edit_count
        if self.last_edited_date is not None:
            data["lastEditedDate"] = self.last_edited_date
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def safe_parse(text: Optional[str], default: Any) -> Any:
    """JSON 解析失败（含 None）时返回 default，不抛异常"""
    if text is None:
        return default
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        logger.debug(f"持久化数据不是合法 JSON，按缺省处理: {text!r}")
        return default


def _to_state_or_none(value: Any) -> Optional[ExperimentState]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    try:
        return ExperimentState(value)
    except ValueError:
        return None


def _to_int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)
