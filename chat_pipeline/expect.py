"""Response expectations, code block extraction and lenient JSON parsing."""

import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import json_repair

# validator(response=..., locals=..., chat=..., **partial) -> None | dict | ExpectError
Validator = Callable[..., "None | dict[str, Any] | ExpectError | Awaitable[Any]"]

_CODE_BLOCK_RE = re.compile(r"```([\w:\-.@]+)[ \t]*\r?\n?(.*?)```", re.DOTALL)
# values like `: 1/2`
_FRACTION_RE = re.compile(r":\s*?(\d+)/(\d+)")


def _fraction_to_decimal(match: re.Match[str]) -> str:
    numerator, denominator = int(match.group(1)), int(match.group(2))
    if denominator == 0:
        return match.group(0)
    return f": {numerator / denominator}"


def clean_json(text: str) -> str:
    """Turn model-written, almost-JSON text into valid JSON text.

    Fractions are replaced by decimals, then quoting, trailing commas and
    truncation are repaired.
    """
    text = _FRACTION_RE.sub(_fraction_to_decimal, text)
    return json_repair.repair_json(text)


def parse_json(text: str) -> Any:
    """Parse JSON the way models write it.

    Raises:
        ValueError: when no JSON value can be recovered from ``text``
    """
    cleaned = clean_json(text)
    value = json.loads(cleaned)
    if value == "" and text.strip() not in ('""', "''"):
        raise ValueError(f"Failed to parse JSON: no JSON value found in {text[:40]!r}")
    return value


@dataclass
class ExpectError:
    """Rejection returned by a validator; ``error`` is sent back to the backend."""

    error: str = ""
    type: str = "error"


def reject(reason: str) -> ExpectError:
    return ExpectError(error=reason)


def extract_code_blocks(text: str) -> list[dict[str, str]]:
    """Return ``{"lang", "code"}`` for every fenced block carrying a language tag."""
    if not text:
        return []
    return [
        {"lang": match.group(1), "code": match.group(2).strip()}
        for match in _CODE_BLOCK_RE.finditer(text)
    ]


def to_code_block(lang: str, value: Any) -> str:
    """Render ``value`` as a fenced code block."""
    if lang.lower() == "json" and not isinstance(value, str):
        value = json.dumps(value, indent=2)
    return f"```{lang}\n{value}```\n"


def json_blocks(blocks: int = 1) -> Validator:
    """Validator requiring exactly ``blocks`` parseable json code blocks.

    On success the parsed value is stored in ``locals["$blocks"]``: the single
    value when one block is expected, otherwise the list of values.
    """

    def validate(response: Any, locals: dict[str, Any], chat: Any, **partial: Any) -> ExpectError | None:
        code_blocks = getattr(response, "code_blocks", None)
        if not code_blocks:
            return reject("1 or more json code blocks were expected e.g. ```json /** ... */```")

        parsed: list[Any] = []
        for block in code_blocks:
            if block.get("lang") != "json":
                continue
            try:
                parsed.append(parse_json(block.get("code", "")))
            except ValueError as e:
                return reject(
                    f"could not parse json code block #{len(parsed) + 1}. "
                    f"Error details: {e} - please update the code block"
                )

        if not parsed:
            return reject("no JSON code blocks were found in the response")
        if len(parsed) != blocks:
            expected = "was" if blocks == 1 else "were"
            found = "was" if len(parsed) == 1 else "were"
            return reject(
                f"{blocks} json code block(s) {expected} expected but "
                f"{len(parsed)} {found} in the response"
            )

        locals["$blocks"] = parsed[0] if blocks == 1 else parsed
        return None

    return validate
