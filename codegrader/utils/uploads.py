"""上传文件与测试用例解析工具。"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class UnsupportedUploadError(ValueError):
    """不支持的上传文件或内容格式错误。"""


def parse_test_cases(test_cases: Any) -> List[Dict[str, str]]:
    """把多种格式的测试用例统一为 ``[{"input", "expected_output"}]``。

    支持：列表、JSON 字符串、逗号分隔的 ``input:output`` 对。
    无法识别时返回空列表。
    """

    if not test_cases:
        return []

    if isinstance(test_cases, str):
        try:
            parsed = json.loads(test_cases)
        except json.JSONDecodeError:
            pairs = []
            for pair in test_cases.split(","):
                value_in, _, value_out = pair.partition(":")
                value_in, value_out = value_in.strip(), value_out.strip()
                if value_in or value_out:
                    pairs.append({"input": value_in, "expected_output": value_out})
            return pairs
        if not isinstance(parsed, list):
            logger.warning("Test cases JSON is not a list: %s", type(parsed).__name__)
            return []
        test_cases = parsed

    if not isinstance(test_cases, list):
        logger.warning("Unsupported test case container: %s", type(test_cases).__name__)
        return []

    cases: List[Dict[str, str]] = []
    for item in test_cases:
        if not isinstance(item, dict):
            continue
        value_in = item.get("input", item.get("inputValue", ""))
        value_out = item.get("expected_output", item.get("expectedOutput", item.get("output", "")))
        cases.append(
            {
                "input": "" if value_in is None else str(value_in),
                "expected_output": "" if value_out is None else str(value_out),
            }
        )
    return cases


def parse_json_upload(content: bytes, filename: str) -> Dict[str, Any]:
    """解析上传的 JSON 文件，顶层必须是对象。"""

    suffix = Path(filename or "").suffix.lower()
    if suffix != ".json":
        raise UnsupportedUploadError(f"Unsupported file extension: {suffix or '(none)'}")
    try:
        data = json.loads(content.decode("utf-8-sig", errors="ignore"))
    except json.JSONDecodeError as exc:
        raise UnsupportedUploadError(f"Invalid JSON at position {exc.pos}: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise UnsupportedUploadError("JSON upload must be an object")
    return data


def split_topics(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return []
