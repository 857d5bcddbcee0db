"""Emit wrapper programs that bind ranked tools to the ``callTool`` transport."""

from __future__ import annotations

import json
import keyword
import logging
import math
import re
import textwrap
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import GenerationFailure
from .models import DIALECTS, ToolDescriptor, ToolParameter, WrapperProgram
from .schema import STOP_WORDS, tokenize

logger = logging.getLogger(__name__)

PY_TYPES = {
    "string": "str",
    "number": "float",
    "boolean": "bool",
    "array": "List[Any]",
    "object": "Dict[str, Any]",
    "null": "Any",
}
TS_TYPES = {
    "string": "string",
    "number": "number",
    "boolean": "boolean",
    "array": "any[]",
    "object": "Record<string, unknown>",
    "null": "unknown",
}

_PY_RESERVED = frozenset(
    {"main", "call_tool", "asyncio", "json", "Any", "Dict", "List", "Optional", "ENTRY_TOOL", "_compact", "_summarize", "_entry"}
)
_TS_RESERVED = frozenset(
    {"main", "callTool", "compact", "summarize", "ENTRY_TOOL", "default", "function", "delete", "new", "class",
     "var", "let", "const", "return", "import", "export", "switch", "case", "typeof", "void", "this", "in"}
)

_KEY_VALUE = re.compile(r"""\b([A-Za-z_][\w-]*)\s*=\s*("[^"]*"|'[^']*'|\S+)""")
_QUOTED = re.compile(r""""([^"]+)"|'([^']+)'""")
_URL = re.compile(r"""https?://[^\s'"<>]+""")
_PATH = re.compile(r"""(?:~|\.{1,2})?(?:/?[\w.-]+/)*[\w-]+\.[A-Za-z0-9]{1,8}\b|(?:\.{0,2}/)[\w./-]+""")
_NUMBER = re.compile(r"(?<![\w.])-?\d+(?:\.\d+)?(?![\w.])")
_IDENTIFIER_TOKEN = re.compile(r"\b[\w-]*\d[\w-]*\b")

_PATH_WORDS = frozenset({"path", "file", "filename", "filepath", "dir", "directory", "folder"})
_URL_WORDS = frozenset({"url", "uri", "href", "endpoint", "link"})


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def to_snake_case(name: str) -> str:
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name)
    return re.sub(r"[^0-9a-zA-Z_]+", "_", spaced).strip("_").lower()


def to_camel_case(name: str) -> str:
    parts = [part for part in re.split(r"[^0-9a-zA-Z]+", to_snake_case(name)) if part]
    if not parts:
        return ""
    return parts[0] + "".join(part[:1].upper() + part[1:] for part in parts[1:])


def _sanitize_identifier(value: str, *, default: str, reserved: frozenset) -> str:
    """Convert an arbitrary string into a valid identifier for either dialect."""

    cleaned = re.sub(r"[^0-9a-zA-Z_]+", "_", value.strip()).strip("_") or default
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    if keyword.iskeyword(cleaned) or cleaned in reserved:
        cleaned = f"{cleaned}_tool"
    return cleaned


@dataclass
class _Binding:
    descriptor: ToolDescriptor
    function: str
    params: List[Tuple[ToolParameter, str]]


class _IntentValues:
    """Candidate literal values pulled out of an intent string."""

    def __init__(self, intent: str) -> None:
        self.intent = intent
        self.explicit: Dict[str, str] = {}
        remainder = intent
        for match in _KEY_VALUE.finditer(intent):
            self.explicit[match.group(1).lower()] = match.group(2).strip("'\"")
            remainder = remainder.replace(match.group(0), " ")
        self.quoted = [a or b for a, b in _QUOTED.findall(remainder)]
        remainder = _QUOTED.sub(" ", remainder)
        self.urls = _URL.findall(remainder)
        remainder = _URL.sub(" ", remainder)
        self.paths = [path for path in _PATH.findall(remainder) if not _NUMBER.fullmatch(path)]
        remainder = _PATH.sub(" ", remainder)
        self.numbers = _NUMBER.findall(remainder)
        self.identifiers = _IDENTIFIER_TOKEN.findall(remainder)
        self.remainder = remainder

    def free_text(self, exclude: Sequence[str]) -> str:
        skip = {word.lower() for word in exclude}
        words = [
            word
            for word in self.remainder.split()
            if word.lower() not in skip and word.lower() not in STOP_WORDS
        ]
        return " ".join(words).strip(" .,;:")


def _coerce(value: str, param_type: str) -> Any:
    if param_type == "number":
        number = float(value)
        return int(number) if number.is_integer() else number
    if param_type == "boolean":
        return value.lower() in {"1", "true", "yes", "on"}
    if param_type in ("array", "object"):
        parsed = json.loads(value)
        expected = list if param_type == "array" else dict
        if not isinstance(parsed, expected):
            raise ValueError(f"expected {param_type}")
        return parsed
    return value


def bind_arguments(descriptor: ToolDescriptor, intent: str) -> Optional[Dict[str, Any]]:
    """Pick literal argument values for ``descriptor`` from ``intent``.

    Returns ``None`` when a required parameter cannot be bound.
    """

    values = _IntentValues(intent)
    quoted = list(values.quoted)
    urls = list(values.urls)
    paths = list(values.paths)
    numbers = list(values.numbers)
    identifiers = list(values.identifiers)
    free_text_used = False
    bound: Dict[str, Any] = {}

    for param in descriptor.parameters:
        explicit = values.explicit.get(param.name.lower())
        if explicit is not None:
            try:
                bound[param.name] = _coerce(explicit, param.type)
            except ValueError:
                return None
            continue
        if not param.required:
            continue

        words = set(tokenize(param.name))
        candidate: Any = None
        if param.type == "string" and words & _URL_WORDS and urls:
            candidate = urls.pop(0)
        elif param.type == "string" and words & _PATH_WORDS and (paths or quoted):
            candidate = paths.pop(0) if paths else quoted.pop(0)
        elif param.type == "number" and numbers:
            candidate = _coerce(numbers.pop(0), "number")
        elif param.type == "string" and quoted:
            candidate = quoted.pop(0)
        elif param.type == "string" and (words & {"id", "key", "ref", "sha", "number"}) and (identifiers or numbers):
            candidate = identifiers.pop(0) if identifiers else numbers.pop(0)
        elif param.type == "string" and not free_text_used:
            exclude = tokenize(descriptor.name) + list(values.identifiers)
            text = values.free_text(exclude)
            if text:
                candidate = text
                free_text_used = True
        if candidate is None:
            return None
        bound[param.name] = candidate
    return bound


def _one_line(text: str, limit: int = 160) -> str:
    collapsed = " ".join((text or "").split())
    return collapsed if len(collapsed) <= limit else collapsed[: limit - 3] + "..."


def _ordered(params: Sequence[ToolParameter]) -> List[ToolParameter]:
    return [param for param in params if param.required] + [param for param in params if not param.required]


def _py_literal(value: Any) -> str:
    return repr(value)


def _ts_literal(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


_PY_PRELUDE = textwrap.dedent(
    """
    import asyncio
    import json
    from typing import Any, Dict, List, Optional

    from mcp_transport import call_tool


    def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in values.items() if value is not None}
    """
).strip("\n")

_PY_EPILOGUE = textwrap.dedent(
    """
    ENTRY_TOOL = __ENTRY_TOOL__


    def _summarize(output: Any) -> str:
        content = output.get("content") if isinstance(output, dict) else None
        if isinstance(content, list):
            size = sum(len(str(item.get("text", "")).encode("utf-8")) for item in content if isinstance(item, dict))
            return f"{ENTRY_TOOL}: {len(content)} content item(s), {size} bytes"
        return f"{ENTRY_TOOL}: {len(json.dumps(output, default=str).encode('utf-8'))} bytes"


    async def _entry() -> None:
        try:
            output = await main()
            if isinstance(output, dict) and output.get("isError"):
                raise RuntimeError(json.dumps(output.get("content"), default=str)[:500])
        except Exception as exc:
            print(json.dumps({"ok": False, "error": f"{type(exc).__name__}: {exc}"}), flush=True)
        else:
            print(json.dumps({"ok": True, "summary": _summarize(output), "output": output}, default=str), flush=True)


    asyncio.run(_entry())
    """
).strip("\n")

_TS_PRELUDE = textwrap.dedent(
    """
    import { callTool } from "./mcp-transport.ts";

    function compact(values: Record<string, unknown>): Record<string, unknown> {
      return Object.fromEntries(Object.entries(values).filter(([, value]) => value !== undefined));
    }
    """
).strip("\n")

_TS_EPILOGUE = textwrap.dedent(
    """
    const ENTRY_TOOL = __ENTRY_TOOL__;

    function summarize(output: unknown): string {
      const content = (output as { content?: unknown[] } | null)?.content;
      if (Array.isArray(content)) {
        const size = content.reduce<number>((total, item) => total + new TextEncoder().encode(String((item as { text?: unknown }).text ?? "")).length, 0);
        return `${ENTRY_TOOL}: ${content.length} content item(s), ${size} bytes`;
      }
      return `${ENTRY_TOOL}: ${new TextEncoder().encode(JSON.stringify(output) ?? "").length} bytes`;
    }

    main().then(
      (output) => {
        if ((output as { isError?: boolean } | null)?.isError) {
          throw new Error(JSON.stringify((output as { content?: unknown }).content).slice(0, 500));
        }
        console.log(JSON.stringify({ ok: true, summary: summarize(output), output }));
      },
    ).catch((error: unknown) => {
      const message = error instanceof Error ? `${error.name}: ${error.message}` : String(error);
      console.log(JSON.stringify({ ok: false, error: message }));
    });
    """
).strip("\n")


def _py_function(binding: _Binding) -> str:
    descriptor = binding.descriptor
    signature: List[str] = []
    entries: List[str] = []
    for param, ident in binding.params:
        annotation = PY_TYPES.get(param.type, "Any")
        if param.required:
            signature.append(f"{ident}: {annotation}")
        else:
            default = _py_literal(param.default) if _is_scalar(param.default) else "None"
            signature.append(f"{ident}: Optional[{annotation}] = {default}" if default == "None" else f"{ident}: {annotation} = {default}")
        entries.append(f"{_py_literal(param.name)}: {ident}")
    lines = []
    if descriptor.description:
        lines.append(f"# {_one_line(descriptor.description)}")
    for example in descriptor.examples:
        lines.append(f"# example: {_one_line(json.dumps(example.input, default=str))}")
    lines.append(f"async def {binding.function}({', '.join(signature)}) -> Any:")
    lines.append(
        f"    return await call_tool({_py_literal(descriptor.qualified_name)}, _compact({{{', '.join(entries)}}}))"
    )
    return "\n".join(lines)


def _ts_function(binding: _Binding) -> str:
    descriptor = binding.descriptor
    signature: List[str] = []
    entries: List[str] = []
    for param, ident in binding.params:
        annotation = TS_TYPES.get(param.type, "unknown")
        if param.required:
            signature.append(f"{ident}: {annotation}")
        elif param.default is not None and _is_scalar(param.default):
            signature.append(f"{ident}: {annotation} = {_ts_literal(param.default)}")
        else:
            signature.append(f"{ident}?: {annotation}")
        entries.append(f"{_ts_literal(param.name)}: {ident}")
    lines = []
    if descriptor.description:
        lines.append(f"/** {_one_line(descriptor.description).replace('*/', '* /')} */")
    for example in descriptor.examples:
        lines.append(f"// example: {_one_line(json.dumps(example.input, default=str))}")
    lines.append(f"export async function {binding.function}({', '.join(signature)}): Promise<unknown> {{")
    lines.append(f"  return callTool({_ts_literal(descriptor.qualified_name)}, compact({{ {', '.join(entries)} }}));")
    lines.append("}")
    return "\n".join(lines)


_DIALECTS: Dict[str, Dict[str, Any]] = {
    "py": {
        "prelude": _PY_PRELUDE,
        "epilogue": _PY_EPILOGUE,
        "function": _py_function,
        "literal": _py_literal,
        "param_case": to_snake_case,
        "reserved": _PY_RESERVED,
        "comment": "#",
        "main": "async def main() -> Any:\n    return await {call}",
    },
    "ts": {
        "prelude": _TS_PRELUDE,
        "epilogue": _TS_EPILOGUE,
        "function": _ts_function,
        "literal": _ts_literal,
        "param_case": to_camel_case,
        "reserved": _TS_RESERVED,
        "comment": "//",
        "main": "async function main(): Promise<unknown> {{\n  return {call};\n}}",
    },
}


class CodeGenerator:
    """Produce a wrapper program for ranked descriptors in one dialect."""

    def __init__(self, default_dialect: str = "py") -> None:
        if default_dialect not in DIALECTS:
            raise GenerationFailure(f"Unknown dialect: {default_dialect}")
        self.default_dialect = default_dialect

    def _bindings(self, descriptors: Sequence[ToolDescriptor], dialect: str) -> List[_Binding]:
        spec = _DIALECTS[dialect]
        case: Callable[[str], str] = spec["param_case"]
        used: Dict[str, int] = {}
        bindings: List[_Binding] = []
        for descriptor in descriptors:
            base = _sanitize_identifier(descriptor.name, default="tool", reserved=spec["reserved"])
            used[base] = used.get(base, 0) + 1
            function = base if used[base] == 1 else f"{base}_{used[base]}"
            params: List[Tuple[ToolParameter, str]] = []
            seen: set[str] = set()
            for param in _ordered(descriptor.parameters):
                ident = _sanitize_identifier(case(param.name), default="arg", reserved=spec["reserved"])
                while ident in seen:
                    ident = f"{ident}_"
                seen.add(ident)
                params.append((param, ident))
            bindings.append(_Binding(descriptor, function, params))
        return bindings

    def generate(
        self,
        descriptors: Sequence[ToolDescriptor],
        intent: str,
        dialect: Optional[str] = None,
    ) -> WrapperProgram:
        dialect = dialect or self.default_dialect
        if dialect not in _DIALECTS:
            raise GenerationFailure(f"Unknown dialect: {dialect}")
        if not descriptors:
            raise GenerationFailure("No tool descriptors to bind")
        spec = _DIALECTS[dialect]
        literal: Callable[[Any], str] = spec["literal"]
        bindings = self._bindings(descriptors, dialect)

        entry: Optional[_Binding] = None
        arguments: Dict[str, Any] = {}
        for binding in bindings:
            bound = bind_arguments(binding.descriptor, intent)
            if bound is not None:
                entry, arguments = binding, bound
                break
        if entry is None:
            raise GenerationFailure(
                "Could not bind intent values to the required parameters of: "
                + ", ".join(binding.descriptor.qualified_name for binding in bindings)
            )

        if dialect == "ts":
            call_args = self._ts_positional(entry, arguments)
        else:
            call_args = ", ".join(
                f"{ident}={literal(arguments[param.name])}" for param, ident in entry.params if param.name in arguments
            )
        call = f"{entry.function}({call_args})"

        comment = spec["comment"]
        sections = [
            f"{comment} Generated wrapper for: {_one_line(intent, 120)}",
            spec["prelude"],
            *(spec["function"](binding) for binding in bindings),
            spec["main"].format(call=call),
            spec["epilogue"].replace("__ENTRY_TOOL__", literal(entry.descriptor.qualified_name)),
        ]
        source = "\n\n\n".join(sections) + "\n" if dialect == "py" else "\n\n".join(sections) + "\n"
        wrapper = WrapperProgram(
            source=source,
            dialect=dialect,
            estimated_tokens=estimate_tokens(source),
            descriptors=[binding.descriptor for binding in bindings],
            entry_tool=entry.descriptor.qualified_name,
            arguments=arguments,
        )
        logger.debug(
            "Generated %s wrapper binding %d tool(s), entry %s, ~%d tokens",
            dialect,
            len(bindings),
            wrapper.entry_tool,
            wrapper.estimated_tokens,
        )
        return wrapper

    @staticmethod
    def _ts_positional(entry: _Binding, arguments: Dict[str, Any]) -> str:
        values: List[str] = []
        params = entry.params
        last = max((index for index, (param, _) in enumerate(params) if param.name in arguments), default=-1)
        for param, _ in params[: last + 1]:
            values.append(_ts_literal(arguments[param.name]) if param.name in arguments else "undefined")
        return ", ".join(values)
