"""
Definition loading.

Reads one JSON workflow definition per file. A malformed file is reported and
excluded; it never aborts the rest of the batch.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from workflow_deployer.core.errors import DefinitionSourceError, MalformedDefinition
from workflow_deployer.core.models import WorkflowDefinition

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """Definitions that loaded, plus per-file errors for those that did not."""

    definitions: list[WorkflowDefinition] = field(default_factory=list)
    errors: list[MalformedDefinition] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [d.name for d in self.definitions]

    @property
    def is_complete(self) -> bool:
        """True when every file in the source loaded."""
        return not self.errors


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "; ".join(parts)


def load_definition(data: Any, source_file: Optional[str] = None) -> WorkflowDefinition:
    """
    Parse one in-memory workflow mapping.

    Raises:
        MalformedDefinition: If the mapping lacks a name or a node list
    """
    source = source_file or "<memory>"

    if not isinstance(data, dict):
        raise MalformedDefinition(source, "top-level value must be a JSON object")
    if not data.get("name"):
        raise MalformedDefinition(source, "missing 'name'")
    if not isinstance(data.get("nodes"), list):
        raise MalformedDefinition(source, "missing 'nodes' list")

    try:
        definition = WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise MalformedDefinition(source, _describe_validation_error(e)) from e

    definition.source_file = source_file
    return definition


class DefinitionLoader:
    """Loads every workflow JSON file in a directory."""

    def __init__(self, directory: Union[str, Path], pattern: str = "*.json"):
        self.directory = Path(directory)
        self.pattern = pattern

    def _files(self) -> list[Path]:
        if not self.directory.is_dir():
            raise DefinitionSourceError(f"Workflows directory not found: {self.directory}")
        return sorted(
            path for path in self.directory.glob(self.pattern)
            if path.is_file() and not path.name.startswith(".")
        )

    def load(self) -> LoadResult:
        """
        Load all definitions.

        Returns:
            LoadResult in file-name order

        Raises:
            DefinitionSourceError: If the directory does not exist
        """
        result = LoadResult()
        seen: dict[str, str] = {}

        files = self._files()
        logger.debug(f"Reading {len(files)} workflow files from {self.directory}")

        for path in files:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                definition = load_definition(data, source_file=path.name)
            except json.JSONDecodeError as e:
                error = MalformedDefinition(path.name, f"invalid JSON: {e.msg} (line {e.lineno})")
                logger.warning(str(error))
                result.errors.append(error)
                continue
            except OSError as e:
                error = MalformedDefinition(path.name, f"unreadable: {e}")
                logger.warning(str(error))
                result.errors.append(error)
                continue
            except MalformedDefinition as error:
                logger.warning(str(error))
                result.errors.append(error)
                continue

            if definition.name in seen:
                error = MalformedDefinition(
                    path.name,
                    f"duplicate workflow name '{definition.name}' (already defined in {seen[definition.name]})",
                )
                logger.warning(str(error))
                result.errors.append(error)
                continue

            seen[definition.name] = path.name
            result.definitions.append(definition)

        logger.info(
            f"Loaded {len(result.definitions)} workflow definitions "
            f"({len(result.errors)} rejected) from {self.directory}"
        )
        return result


def load_definitions(definitions_data: list[dict[str, Any]]) -> LoadResult:
    """Load an in-memory batch with the same per-item and duplicate-name rules."""
    result = LoadResult()
    seen: set[str] = set()
    for index, data in enumerate(definitions_data):
        source = f"<item {index}>"
        try:
            definition = load_definition(data, source_file=source)
        except MalformedDefinition as error:
            result.errors.append(error)
            continue
        definition.source_file = None
        if definition.name in seen:
            result.errors.append(
                MalformedDefinition(source, f"duplicate workflow name '{definition.name}'")
            )
            continue
        seen.add(definition.name)
        result.definitions.append(definition)
    return result
