"""从生成文本中恢复结构化 JSON。

解析顺序：
1. 预处理：对自由文本字段（代码模板、题目描述、测试输入）中的裸换行、
   引号、反斜杠等字符做转义，模型经常在这些字段里输出未转义的代码；
2. Markdown 代码块 (```json ... ```)；
3. 括号平衡扫描（忽略字符串内部的括号），正文中的括号不会挡住后面的 JSON；
4. 直接解析去除首尾空白后的全文。

全部失败时返回 ``ExtractionFailure``，不抛出异常。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from codegrader.schemas.evaluation import ExtractionFailure

logger = logging.getLogger(__name__)

FREE_TEXT_FIELDS: Tuple[str, ...] = ("codeTemplate", "description", "input")

_VALID_ESCAPES = set('"\\/bfnrtu')
_HEX = set("0123456789abcdefABCDEF")
_CONTROL_ESCAPES = {
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\f": "\\f",
    "\b": "\\b",
    "\v": "\\u000b",
}
_LITERAL_UNESCAPES = (("\\n", "\n"), ("\\t", "\t"), ("\\r", "\r"))
_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_CLOSERS = {"{": "}", "[": "]"}


def _field_pattern(fields: Sequence[str]) -> re.Pattern:
    names = "|".join(re.escape(field) for field in fields)
    return re.compile(
        r'("(?:%s)"\s*:\s*")((?:\\[\s\S]|[^\\])*?)"(?=\s*[,}\]])' % names
    )


def _escape_content(content: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(content):
        ch = content[i]
        if ch == "\\":
            nxt = content[i + 1] if i + 1 < len(content) else ""
            if nxt == "u" and all(c in _HEX for c in content[i + 2 : i + 6]) and len(content[i + 2 : i + 6]) == 4:
                out.append(content[i : i + 6])
                i += 6
                continue
            if nxt and nxt != "u" and nxt in _VALID_ESCAPES:
                out.append(ch + nxt)
                i += 2
                continue
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch in _CONTROL_ESCAPES:
            out.append(_CONTROL_ESCAPES[ch])
        elif ord(ch) < 0x20:
            out.append("\\u%04x" % ord(ch))
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def escape_free_text_fields(text: str, fields: Sequence[str] = FREE_TEXT_FIELDS) -> str:
    """转义白名单字段值中的非法字符，已合法的转义保持不变。"""

    if not text or not fields:
        return text
    pattern = _field_pattern(fields)
    return pattern.sub(lambda m: m.group(1) + _escape_content(m.group(2)) + '"', text)


def unescape_free_text_fields(value: Any, fields: Sequence[str] = FREE_TEXT_FIELDS) -> Any:
    """把白名单字段中字面量的 ``\\n`` / ``\\t`` / ``\\r`` 还原为控制字符。"""

    if isinstance(value, dict):
        restored = {}
        for key, item in value.items():
            if key in fields and isinstance(item, str):
                for literal, char in _LITERAL_UNESCAPES:
                    item = item.replace(literal, char)
                restored[key] = item
            else:
                restored[key] = unescape_free_text_fields(item, fields)
        return restored
    if isinstance(value, list):
        return [unescape_free_text_fields(item, fields) for item in value]
    return value


def _next_start(text: str, pos: int) -> int:
    starts = [p for p in (text.find("{", pos), text.find("[", pos)) if p >= 0]
    return min(starts) if starts else -1


def _balanced_end(text: str, start: int) -> Tuple[Optional[int], bool]:
    """从 ``start`` 扫描到括号配平处，返回 (结束下标, 是否遇到不匹配的括号)。

    文本在配平前结束时返回 ``(None, False)``。
    """

    stack: List[str] = []
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack[-1] != ch:
                return None, True
            stack.pop()
            if not stack:
                return i, False
    return None, False


def find_balanced_json(text: str) -> Optional[str]:
    """返回文本中最长的、括号配平且可解析的 JSON 片段。

    正文里的 ``[Q1]``、``[1, 2]`` 之类的括号也会被扫描到：不可解析的片段
    从下一个括号处重新开始，可解析的片段之间取最长者。遇到直到文本末尾
    都未闭合的括号时停止，其后的内容都属于这个被截断的结构。
    """

    best: Optional[str] = None
    pos = _next_start(text, 0)
    while pos >= 0:
        end, mismatched = _balanced_end(text, pos)
        if end is None and not mismatched:
            break
        if end is not None and _loads_ok(text[pos : end + 1]):
            candidate = text[pos : end + 1]
            if best is None or len(candidate) > len(best):
                best = candidate
            pos = _next_start(text, end + 1)
        else:
            pos = _next_start(text, pos + 1)
    return best


def _truncated_start(text: str) -> int:
    """找到未闭合的 JSON 起点：跳过正文中已经配平的括号片段。"""

    first = pos = _next_start(text, 0)
    while pos >= 0:
        end, mismatched = _balanced_end(text, pos)
        if end is None and not mismatched:
            return pos
        pos = _next_start(text, end + 1 if end is not None else pos + 1)
    return first


def _scan_structure(text: str) -> Tuple[List[str], bool, bool, List[int]]:
    """返回 (未闭合括号栈, 是否停在字符串内, 是否停在转义符后, 字符串外逗号位置)。"""

    stack: List[str] = []
    commas: List[int] = []
    in_string = False
    escape_next = False
    for i, ch in enumerate(text):
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if stack and stack[-1] == ch:
                stack.pop()
        elif ch == ",":
            commas.append(i)
    return stack, in_string, escape_next, commas


def _close_structures(fragment: str) -> str:
    stack, in_string, escape_next, _ = _scan_structure(fragment)
    if escape_next:
        fragment = fragment[:-1]
    if in_string:
        fragment += '"'
    fragment = fragment.rstrip()
    if fragment.endswith(","):
        fragment = fragment[:-1].rstrip()
    if fragment.endswith(":"):
        fragment += " null"
    return fragment + "".join(reversed(stack))


def _loads_ok(candidate: str) -> bool:
    try:
        json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return False
    return True


def repair_truncated_json(text: str, max_comma_attempts: int = 25) -> Optional[str]:
    """尝试修复因 token 上限被截断的 JSON，成功时返回可解析的 JSON 文本。

    依次尝试：直接补齐未闭合的字符串与括号；截断到最后一个 ``}`` 再补齐；
    从后往前截断到字符串外的逗号再补齐。
    """

    if not text:
        return None
    text = escape_free_text_fields(text)
    start = _truncated_start(text)
    if start < 0:
        return None
    fragment = text[start:].rstrip()
    if fragment.endswith("```"):
        fragment = fragment[:-3].rstrip()

    candidates: List[str] = [_close_structures(fragment)]
    last_brace = fragment.rfind("}")
    if last_brace > 0:
        candidates.append(_close_structures(fragment[: last_brace + 1]))
    for candidate in candidates:
        if _loads_ok(candidate):
            return candidate

    _, _, _, commas = _scan_structure(fragment)
    for position in list(reversed(commas))[:max_comma_attempts]:
        candidate = _close_structures(fragment[:position])
        if _loads_ok(candidate):
            return candidate
    return None


class StructuredResponseExtractor:
    """从自由文本中恢复一个 JSON 值。"""

    def __init__(self, free_text_fields: Iterable[str] = FREE_TEXT_FIELDS) -> None:
        self.free_text_fields = tuple(free_text_fields)

    def _strategies(self, prepared: str) -> List[Tuple[str, Optional[str]]]:
        fenced = None
        for match in _FENCE_PATTERN.finditer(prepared):
            body = match.group(1).strip()
            if body[:1] in ("{", "["):
                fenced = body
                break
        return [
            ("fenced", fenced),
            ("balanced", find_balanced_json(prepared)),
            ("whole", prepared.strip() or None),
        ]

    def extract(self, text: Optional[str]) -> Union[Any, ExtractionFailure]:
        raw_text = text or ""
        prepared = escape_free_text_fields(raw_text, self.free_text_fields)

        last_error: Optional[json.JSONDecodeError] = None
        tried: set = set()
        for strategy, candidate in self._strategies(prepared):
            if candidate is None or candidate in tried:
                continue
            tried.add(candidate)
            try:
                value = json.loads(candidate)
            except json.JSONDecodeError as exc:
                last_error = exc
                continue
            logger.debug("Extracted JSON using %s strategy", strategy)
            return unescape_free_text_fields(value, self.free_text_fields)

        position = last_error.pos if last_error is not None else None
        message = last_error.msg if last_error is not None else "no JSON candidate found"
        logger.warning(
            "JSON extraction failed at position %s: %s (head=%r)",
            position,
            message,
            raw_text[:120],
        )
        return ExtractionFailure(raw_text=raw_text, error_position=position, message=message)


_default_extractor = StructuredResponseExtractor()


def extract(text: Optional[str]) -> Union[Any, ExtractionFailure]:
    """使用默认字段白名单的便捷入口。"""

    return _default_extractor.extract(text)
