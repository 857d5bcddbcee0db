"""Parse MCP tool listings and catalogue files into tool descriptors."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import GenerationFailure
from .models import ToolDescriptor, ToolExample, ToolParameter

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    """
    a an and are as at be by can do does for from get has have i in into is it its
    me my of on or our please should so than that the their them then there these
    this to up us was we what when which will with you your
    """.split()
)

_JSON_TYPES = {"string", "number", "integer", "boolean", "array", "object", "null"}

_CATEGORY_KEYWORDS = {
    "git": ("git", "commit", "branch", "merge", "diff", "repository", "repo", "checkout"),
    "filesystem": ("file", "files", "directory", "folder", "path", "read", "write", "fs"),
    "network": ("http", "https", "url", "fetch", "request", "download", "api", "web"),
    "database": ("sql", "query", "table", "database", "db", "record", "records", "row"),
    "testing": ("test", "tests", "assert", "coverage", "spec", "lint"),
}

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def tokenize(text: str) -> List[str]:
    """Lower-case word tokens with camelCase and snake_case split apart."""

    spaced = _CAMEL_BOUNDARY.sub(" ", text or "")
    return [token for token in _TOKEN_SPLIT.split(spaced.lower()) if token]


def extract_keywords(text: str) -> List[str]:
    seen: Dict[str, None] = {}
    for token in tokenize(text):
        if len(token) < 2 or token in STOP_WORDS:
            continue
        seen.setdefault(token, None)
    return list(seen)


def infer_category(name: str, description: str) -> str:
    words = set(tokenize(f"{name} {description}"))
    for category, keywords in _CATEGORY_KEYWORDS.items():
        if words.intersection(keywords):
            return category
    return "general"


def _normalise_type(value: object) -> str:
    if isinstance(value, list):
        # ["string", "null"] style unions collapse to the first concrete type
        value = next((item for item in value if item != "null"), "string")
    text = str(value or "string").lower()
    if text not in _JSON_TYPES:
        raise GenerationFailure(f"Unsupported parameter type: {value!r}")
    return "number" if text == "integer" else text


def _parameters_from_json_schema(schema: object, tool_name: str) -> List[ToolParameter]:
    if schema is None:
        return []
    if not isinstance(schema, dict):
        raise GenerationFailure(f"Tool {tool_name!r} has a non-object input schema")
    properties = schema.get("properties", {})
    if properties is None:
        properties = {}
    if not isinstance(properties, dict):
        raise GenerationFailure(f"Tool {tool_name!r} has malformed schema properties")
    required = schema.get("required", [])
    if not isinstance(required, list):
        raise GenerationFailure(f"Tool {tool_name!r} has a malformed 'required' list")
    params: List[ToolParameter] = []
    for name, spec in properties.items():
        if not isinstance(spec, dict):
            raise GenerationFailure(f"Parameter {name!r} of {tool_name!r} is not an object schema")
        params.append(
            ToolParameter(
                name=str(name),
                type=_normalise_type(spec.get("type", "string")),
                required=name in required,
                default=spec.get("default"),
                description=str(spec.get("description") or ""),
            )
        )
    return params


def _parameters_from_catalogue(raw: object, tool_name: str) -> List[ToolParameter]:
    if isinstance(raw, dict):
        items = [dict(spec, name=name) if isinstance(spec, dict) else None for name, spec in raw.items()]
    elif isinstance(raw, list):
        items = list(raw)
    else:
        raise GenerationFailure(f"Tool {tool_name!r} has unparsable parameters")
    params: List[ToolParameter] = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise GenerationFailure(f"Tool {tool_name!r} has a parameter without a name")
        params.append(
            ToolParameter(
                name=item["name"],
                type=_normalise_type(item.get("type", "string")),
                required=bool(item.get("required", True)),
                default=item.get("default"),
                description=str(item.get("description") or ""),
            )
        )
    return params


def _examples(raw: object) -> List[ToolExample]:
    if not isinstance(raw, list):
        return []
    examples: List[ToolExample] = []
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("input"), dict):
            examples.append(
                ToolExample(
                    input=item["input"],
                    output=item.get("output"),
                    description=str(item.get("description") or ""),
                )
            )
    return examples


def _returns(raw: object) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return str(raw.get("type") or "object")
    return "any"


def parse_tool_descriptor(server: str, raw: object) -> ToolDescriptor:
    """Build a descriptor from a ``tools/list`` entry or a catalogue record."""

    if not isinstance(raw, dict):
        raise GenerationFailure(f"Tool entry from {server} is not an object")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise GenerationFailure(f"Tool entry from {server} has no name")
    description = str(raw.get("description") or "").strip()

    if "parameters" in raw:
        params = _parameters_from_catalogue(raw["parameters"], name)
    else:
        params = _parameters_from_json_schema(raw.get("inputSchema", raw.get("input_schema")), name)

    names = [param.name for param in params]
    duplicates = sorted({param for param in names if names.count(param) > 1})
    if duplicates:
        raise GenerationFailure(f"Tool {name!r} declares duplicate parameters: {', '.join(duplicates)}")

    returns = _returns(raw.get("returns", raw.get("outputSchema")))
    category = raw.get("category")
    if not isinstance(category, str) or not category.strip():
        category = infer_category(name, description)

    tags: List[str] = []
    for source in (raw.get("keywords"), raw.get("tags")):
        if isinstance(source, list):
            tags.extend(str(item).lower() for item in source)
    tags.extend(extract_keywords(name))
    tags.extend(extract_keywords(" ".join(names)))
    keywords = list(dict.fromkeys(tags))

    return ToolDescriptor(
        server=server,
        name=name,
        description=description,
        parameters=params,
        returns=returns,
        examples=_examples(raw.get("examples")),
        category=category.lower(),
        keywords=keywords,
    )


def parse_tool_list(server: str, tools: Iterable[object]) -> List[ToolDescriptor]:
    return [parse_tool_descriptor(server, tool) for tool in tools]


def load_catalogue(directory: Path, server: Optional[str] = None) -> Dict[str, List[ToolDescriptor]]:
    """Load every ``*.json`` catalogue file below ``directory``.

    Files hold either a list of tool records or ``{"server": ..., "tools": [...]}``;
    the server id defaults to the file stem.
    """

    catalogue: Dict[str, List[ToolDescriptor]] = {}
    if not directory.is_dir():
        raise GenerationFailure(f"Tool catalogue directory not found: {directory}")
    for path in sorted(directory.rglob("*.json")):
        try:
            with path.open() as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise GenerationFailure(f"Unreadable tool catalogue {path}: {exc}") from exc
        server_name = server or path.stem
        tools = data
        if isinstance(data, dict):
            server_name = str(data.get("server") or server_name)
            tools = data.get("tools", [data] if "name" in data else [])
        if not isinstance(tools, list):
            raise GenerationFailure(f"Tool catalogue {path} does not contain a tool list")
        catalogue.setdefault(server_name, []).extend(parse_tool_list(server_name, tools))
        logger.debug("Loaded %d catalogue tools for %s from %s", len(tools), server_name, path)
    return catalogue
