"""Heuristic classification of completed response text.

Models answer either in prose or with a JSON document (optionally wrapped in
a fenced code block) describing a plan, a set of file operations, a single
file action or a tool-call request. :func:`parse_response` extracts a JSON
candidate and runs an ordered list of pure classifiers over it; the first
one that returns a result wins. Any classifier that raises is skipped, and
text that never parses as JSON degrades to a plain message.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Mapping, Sequence

from .types import (
    FileOperation,
    ParsedResponse,
    PlanStep,
    ResponseKind,
    ToolCallRequest,
)

__all__ = [
    "SINGLE_FILE_ACTIONS",
    "CLASSIFIERS",
    "parse_response",
    "extract_json_from_code_block",
    "extract_json_candidate",
    "looks_like_json",
    "classify_plan",
    "classify_file_operations",
    "classify_single_file_action",
    "classify_tool_call",
    "classify_generic_json",
    "tool_calls_from_payload",
]

LOGGER = logging.getLogger(__name__)

SINGLE_FILE_ACTIONS: frozenset[str] = frozenset(
    {
        "createFile",
        "updateFile",
        "deleteFile",
        "renameFile",
        "readFile",
        "listFiles",
        "searchAndReplace",
        "patchFile",
        "smartUpdate",
    }
)

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```[^\n`]*\s*([\s\S]*?)```")

Classifier = Callable[[Any], "ParsedResponse | None"]


# -----------------------------------------------------------------------------
# JSON extraction
# -----------------------------------------------------------------------------


def looks_like_json(text: str | None) -> bool:
    """Return True when ``text`` is wrapped in matching braces or brackets."""
    if not text or not text.strip():
        return False
    trimmed = text.strip()
    return (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    )


def extract_json_from_code_block(text: str | None) -> str | None:
    """Return the body of a fenced JSON block, if the text has one.

    A fence explicitly labeled ``json`` wins; otherwise the first fence
    whose body looks like JSON is used.
    """
    if not text or not text.strip():
        return None
    match = _JSON_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    match = _ANY_FENCE_RE.search(text)
    if match:
        extracted = match.group(1).strip()
        if looks_like_json(extracted):
            return extracted
    return None


def extract_json_candidate(text: str | None) -> str | None:
    """Fenced JSON first, then the text itself when it looks like JSON."""
    candidate = extract_json_from_code_block(text)
    if candidate is None and looks_like_json(text):
        candidate = (text or "").strip()
    return candidate


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------


def _opt_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise TypeError(f"Field {key!r} must be a scalar")
    return str(value)


def _opt_int(payload: Mapping[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"Field {key!r} must be an integer")
    return int(value)


def _opt_bool(payload: Mapping[str, Any], key: str) -> bool | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _opt_lines(payload: Mapping[str, Any], key: str) -> tuple[str, ...] | None:
    value = payload.get(key)
    if not isinstance(value, list):
        return None
    return tuple(str(item) for item in value)


def _file_operation(payload: Mapping[str, Any], op_type: str) -> FileOperation:
    content = _opt_str(payload, "content")
    if content is None:
        content = _opt_str(payload, "newContent")
    return FileOperation(
        type=op_type,
        path=_opt_str(payload, "path") or "",
        content=content,
        old_path=_opt_str(payload, "oldPath"),
        new_path=_opt_str(payload, "newPath"),
        search=_opt_str(payload, "search"),
        replace=_opt_str(payload, "replace"),
        start_line=_opt_int(payload, "startLine"),
        delete_count=_opt_int(payload, "deleteCount"),
        insert_lines=_opt_lines(payload, "insertLines"),
        update_type=_opt_str(payload, "updateType"),
        search_pattern=_opt_str(payload, "searchPattern"),
        replace_with=_opt_str(payload, "replaceWith"),
        diff_patch=_opt_str(payload, "diffPatch"),
        create_backup=_opt_bool(payload, "createBackup"),
        validate_content=_opt_bool(payload, "validateContent"),
        content_type=_opt_str(payload, "contentType"),
        error_handling=_opt_str(payload, "errorHandling"),
        generate_diff=_opt_bool(payload, "generateDiff"),
        diff_format=_opt_str(payload, "diffFormat"),
    )


def _explanation(payload: Mapping[str, Any]) -> str:
    return _opt_str(payload, "explanation") or ""


# -----------------------------------------------------------------------------
# Classifiers
# -----------------------------------------------------------------------------


def classify_plan(payload: Any) -> ParsedResponse | None:
    """Any object carrying a ``steps`` array is a plan."""
    if not isinstance(payload, Mapping) or not isinstance(payload.get("steps"), list):
        return None
    steps: list[PlanStep] = []
    for index, raw in enumerate(payload["steps"]):
        if not isinstance(raw, Mapping):
            raise TypeError("Plan steps must be objects")
        steps.append(
            PlanStep(
                id=_opt_str(raw, "id") or f"s{index + 1}",
                title=_opt_str(raw, "title") or f"Step {index + 1}",
                kind=_opt_str(raw, "kind") or "file",
            )
        )
    goal = _opt_str(payload, "goal")
    explanation = f"Plan for: {goal}" if goal else "Plan"
    return ParsedResponse(kind=ResponseKind.PLAN, explanation=explanation, plan_steps=tuple(steps))


def classify_file_operations(payload: Any) -> ParsedResponse | None:
    """An ``operations`` array; ``modifyLines`` pairs expand to search/replace ops."""
    if not isinstance(payload, Mapping) or not isinstance(payload.get("operations"), list):
        return None
    operations: list[FileOperation] = []
    for raw in payload["operations"]:
        if not isinstance(raw, Mapping):
            raise TypeError("File operations must be objects")
        hunks = raw.get("modifyLines")
        if isinstance(hunks, list):
            path = _opt_str(raw, "path") or ""
            for hunk in hunks:
                if not isinstance(hunk, Mapping):
                    continue
                search = _opt_str(hunk, "search")
                replacement = _opt_str(hunk, "replace")
                if search is None or replacement is None:
                    continue
                operations.append(
                    FileOperation(type="searchAndReplace", path=path, search=search, replace=replacement)
                )
            continue
        op_type = _opt_str(raw, "type") or _opt_str(raw, "action")
        if not op_type:
            raise ValueError("File operation is missing its type")
        operations.append(_file_operation(raw, op_type))
    return ParsedResponse(
        kind=ResponseKind.FILE_OPERATION_SET,
        explanation=_explanation(payload),
        operations=tuple(operations),
    )


def classify_single_file_action(payload: Any) -> ParsedResponse | None:
    """The object itself is one file action named by ``action`` or ``type``."""
    if not isinstance(payload, Mapping):
        return None
    for key in ("action", "type"):
        verb = payload.get(key)
        if isinstance(verb, str) and verb in SINGLE_FILE_ACTIONS:
            return ParsedResponse(
                kind=ResponseKind.FILE_OPERATION_SET,
                explanation=_explanation(payload),
                operations=(_file_operation(payload, verb),),
            )
    return None


def classify_tool_call(payload: Any) -> ParsedResponse | None:
    """``{"action": "tool_call", "tool_calls": [...]}``."""
    if not isinstance(payload, Mapping):
        return None
    action = payload.get("action")
    if not isinstance(action, str) or action.lower() != "tool_call":
        return None
    raw_calls = payload.get("tool_calls")
    if not isinstance(raw_calls, list):
        return None
    tool_calls = tool_calls_from_payload(raw_calls)
    if not tool_calls:
        return None
    return ParsedResponse(
        kind=ResponseKind.TOOL_CALL,
        explanation=_explanation(payload),
        tool_calls=tool_calls,
    )


def classify_generic_json(payload: Any) -> ParsedResponse | None:
    """Parsed JSON that matched no known shape."""
    return ParsedResponse(
        kind=ResponseKind.GENERIC_JSON,
        explanation=json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
    )


CLASSIFIERS: tuple[Classifier, ...] = (
    classify_plan,
    classify_file_operations,
    classify_single_file_action,
    classify_tool_call,
    classify_generic_json,
)


def tool_calls_from_payload(items: Sequence[Any]) -> tuple[ToolCallRequest, ...]:
    """Build tool call requests from a ``tool_calls`` array.

    Arguments may be given as ``args`` or ``arguments``, either as an object
    or as a JSON-encoded string. Malformed entries are logged and skipped;
    ``index`` keeps each call's position in the original array.
    """
    calls: list[ToolCallRequest] = []
    for index, item in enumerate(items):
        try:
            calls.append(_tool_call(item, index))
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Skipping tool call entry %d: %s", index, exc)
    return tuple(calls)


def _tool_call(item: Any, index: int) -> ToolCallRequest:
    if not isinstance(item, Mapping):
        raise TypeError("Tool call entries must be objects")
    name = item.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Tool call entry is missing its name")
    arguments = item.get("args", item.get("arguments"))
    if isinstance(arguments, str):
        arguments = json.loads(arguments) if arguments.strip() else {}
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, Mapping):
        raise TypeError(f"Arguments for tool {name!r} must be an object")
    return ToolCallRequest(name=name.strip(), arguments=dict(arguments), index=index)


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------


def _classify(text: str) -> ParsedResponse | None:
    candidate = extract_json_candidate(text)
    if candidate is None:
        return None
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        LOGGER.debug("Response candidate is not valid JSON; treating as text")
        return None
    for classifier in CLASSIFIERS:
        try:
            result = classifier(payload)
        except Exception as exc:
            LOGGER.debug("Classifier %s rejected payload: %s", classifier.__name__, exc)
            continue
        if result is not None:
            return result
    return None


def parse_response(text: str, raw_response: str = "") -> ParsedResponse:
    """Classify completed response text; never raises.

    Args:
        text: The accumulated answer text of the turn.
        raw_response: Raw transport log attached to the result.

    Returns:
        A :class:`ParsedResponse`. Prose, or JSON that cannot be parsed,
        yields a ``MESSAGE`` holding the text verbatim.
    """
    try:
        if not isinstance(text, str):
            raise TypeError(f"Response text must be a string, got {type(text).__name__}")
        result = _classify(text)
        if result is not None:
            LOGGER.debug("Response classified as %s", result.kind.value)
            return result.with_context(raw_response=raw_response)
        return ParsedResponse.message(text, raw_response)
    except Exception:
        LOGGER.warning("Unable to classify response text", exc_info=True)
        return ParsedResponse(
            kind=ResponseKind.MESSAGE,
            explanation=text if isinstance(text, str) else "",
            raw_response=raw_response if isinstance(raw_response, str) else "",
            is_valid=False,
        )
