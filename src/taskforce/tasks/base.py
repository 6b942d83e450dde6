"""Task dataclasses used by the orchestrator."""

from __future__ import annotations

import csv
import io
import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config import ConfigError
from ..enums import OutputFormat

InputMapper = Callable[[str], Any]


@dataclass
class ExecutionContext:
    """Mutable per-run bookkeeping attached to a task."""

    delegation_chain: List[str] = field(default_factory=list)
    replan_reason_used: bool = False

    def reset(self) -> None:
        self.delegation_chain.clear()
        self.replan_reason_used = False


@dataclass
class Task:
    """A single unit of work for an agent."""

    id: str
    name: str
    description: str
    output_format: OutputFormat = OutputFormat.TEXT
    agent: str = ""
    input_from_task: Optional[str] = None
    expected_role: Optional[str] = None
    execution_context: ExecutionContext = field(default_factory=ExecutionContext)

    def __post_init__(self) -> None:
        raw_format = self.output_format
        if isinstance(raw_format, OutputFormat):
            raw_format = raw_format.value
        try:
            self.output_format = OutputFormat(str(raw_format).lower())
        except ValueError as exc:
            raise ConfigError(
                f"Task '{self.id}' has unsupported output format '{self.output_format}'"
            ) from exc
        self.agent = self.agent or ""

    @property
    def input_mapper(self) -> Optional[InputMapper]:
        """Parser applied to the predecessor output, chosen by output format."""
        if not self.input_from_task:
            return None
        return _MAPPERS.get(self.output_format)

    def map_input(self, raw: str) -> Any:
        mapper = self.input_mapper
        return mapper(raw) if mapper else raw


def clean_markdown_json(raw: str) -> str:
    """Strip markdown code fences the models like to wrap JSON in."""
    cleaned = raw.strip()
    cleaned = re.sub(r"^```json\s*\n?", "", cleaned)
    cleaned = re.sub(r"^```\s*\n?", "", cleaned)
    cleaned = re.sub(r"\n*```$", "", cleaned)
    return cleaned.replace("```json", "").replace("```", "").strip()


def parse_json_output(output: str) -> Any:
    try:
        return json.loads(clean_markdown_json(output))
    except json.JSONDecodeError:
        return output


def parse_csv_output(output: str) -> Any:
    text = output.strip()
    if not text:
        return []
    reader = csv.DictReader(io.StringIO(text))
    rows: List[Dict[str, str]] = []
    for row in reader:
        rows.append({(key or "").strip(): (value or "").strip() for key, value in row.items()})
    return rows


def _element_to_dict(element: ET.Element) -> Any:
    children = list(element)
    if not children and not element.attrib:
        return (element.text or "").strip()
    node: Dict[str, Any] = dict(element.attrib)
    for child in children:
        value = _element_to_dict(child)
        if child.tag in node:
            existing = node[child.tag]
            if not isinstance(existing, list):
                node[child.tag] = [existing]
            node[child.tag].append(value)
        else:
            node[child.tag] = value
    text = (element.text or "").strip()
    if text:
        node["#text"] = text
    return node


def parse_xml_output(output: str) -> Any:
    try:
        root = ET.fromstring(clean_markdown_json(output))
    except ET.ParseError:
        return output
    return {root.tag: _element_to_dict(root)}


_MAPPERS: Dict[OutputFormat, InputMapper] = {
    OutputFormat.JSON: parse_json_output,
    OutputFormat.CSV: parse_csv_output,
    OutputFormat.XML: parse_xml_output,
}
