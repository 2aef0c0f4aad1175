from __future__ import annotations

import re
from functools import lru_cache
from typing import Callable, Iterable, Mapping, Optional, Sequence

STABLE_QUALITY = "stable"

_LOCALE_SEPARATOR_RE = re.compile(r"[-_]")


def check_quality(insiders_only: Optional[bool], app_quality: Optional[str]) -> bool:
    """稳定版 + 仅限预览版的实验 -> 不通过"""
    return not (insiders_only is True and (app_quality or "").lower() == STABLE_QUALITY)


def _primary_subtag(locale: str) -> str:
    return _LOCALE_SEPARATOR_RE.split(locale, maxsplit=1)[0]


def check_display_language(configured: Optional[str], active: Optional[str]) -> bool:
    """
    语言条件

    先整体比较（忽略大小写），不一致时再只比较主语言标签，
    例如 "en-US" 与 "en-GB" 通过，"fr-FR" 与 "en-US" 不通过。
    """
    if not isinstance(configured, str):
        return True
    wanted = configured.lower()
    current = (active or "").lower()
    if wanted == current:
        return True
    return _primary_subtag(wanted) == _primary_subtag(current)


def check_installed_extensions(
    includes: Optional[Sequence[str]],
    excludes: Optional[Sequence[str]],
    installed_ids: Iterable[str],
) -> bool:
    installed = {x.lower() for x in installed_ids}

    includes_check = True
    if includes:
        wanted = {x.lower() for x in includes}
        includes_check = bool(installed & wanted)

    excludes_check = True
    if excludes:
        unwanted = {x.lower() for x in excludes}
        excludes_check = not (installed & unwanted)

    return includes_check and excludes_check


def check_probability(probability: Optional[float], roll: Callable[[], float]) -> bool:
    """抽一次 [0,1) 均匀随机数，严格小于概率时通过；未配置视为 1"""
    if probability is None:
        probability = 1.0
    return roll() < probability


def check_workspace_tags(
    includes: Optional[Sequence[str]],
    excludes: Optional[Sequence[str]],
    tags: Mapping[str, bool],
) -> bool:
    if includes and not any(tags.get(tag) for tag in includes):
        return False
    if excludes and any(tags.get(tag) for tag in excludes):
        return False
    return True


def match_glob(pattern: str, path: str) -> bool:
    """
    glob 匹配文件路径

    支持 `**`（跨目录）、`*`、`?`、`{a,b}` 与 `[...]`；`/` 与 `\\` 都视为路径分隔符。
    """
    if not pattern or not path:
        return False
    return _compile_glob(pattern).match(path.replace("\\", "/")) is not None


@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern:
    return re.compile(_translate(pattern.replace("\\", "/")) + r"\Z", re.DOTALL)


def _translate(pattern: str) -> str:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if pattern.startswith("/", i):
                    # `**/` 可以匹配零个或多个目录
                    i += 1
                    out.append(r"(?:[^/]*/)*")
                else:
                    out.append(r".*")
                continue
            out.append(r"[^/]*")
        elif c == "?":
            out.append(r"[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = end
        elif c == "{":
            end = pattern.find("}", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                options = pattern[i + 1:end].split(",")
                out.append("(?:" + "|".join(_translate(o) for o in options) + ")")
                i = end
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)
