"""
Specification Loader - Parse resource specification documents.

A specification document is a tree of typed resource declarations::

    resources:
      Net:
        type: network.vpc
        attributes:
          cidr: 10.0.0.0/16
      Server:
        type: compute.instance
        depends_on: [Net]
        attributes:
          vpc_id: ${Net.id}

Documents may be YAML or JSON. Validation errors are reported as
SpecificationError so callers never see raw pydantic exceptions.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from errors import SpecificationError

logger = logging.getLogger(__name__)

# Logical ids: letter first, then alphanumerics, '_' or '-', max 63 chars
LOGICAL_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,62}$")
MAX_NESTING_DEPTH = 16


def validate_logical_id(value: str) -> str:
    """Validate a single (unqualified) logical id segment."""
    if not value:
        raise ValueError("logical id cannot be empty")
    if not LOGICAL_ID_PATTERN.match(value):
        raise ValueError(
            f"logical id '{value}' must start with a letter and contain only "
            f"letters, digits, '_' or '-' (max 63 characters)"
        )
    return value


class ResourceDeclaration(BaseModel):
    """A single resource declaration, possibly with nested children."""

    type: str = Field(min_length=1)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("depends_on", "dependsOn"),
    )
    resources: Dict[str, "ResourceDeclaration"] = Field(default_factory=dict)

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_depends_on(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("attributes", mode="before")
    @classmethod
    def coerce_attributes(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("resources")
    @classmethod
    def validate_child_ids(
        cls, v: Dict[str, "ResourceDeclaration"]
    ) -> Dict[str, "ResourceDeclaration"]:
        for logical_id in v:
            validate_logical_id(logical_id)
        return v


ResourceDeclaration.model_rebuild()


class SpecificationDocument(BaseModel):
    """Top-level specification document."""

    version: int = 1
    description: Optional[str] = None
    resources: Dict[str, ResourceDeclaration] = Field(default_factory=dict)

    @field_validator("resources")
    @classmethod
    def validate_resource_ids(
        cls, v: Dict[str, ResourceDeclaration]
    ) -> Dict[str, ResourceDeclaration]:
        for logical_id in v:
            validate_logical_id(logical_id)
        return v


def _check_depth(declarations: Dict[str, ResourceDeclaration], depth: int = 1) -> None:
    if depth > MAX_NESTING_DEPTH:
        raise SpecificationError(
            f"Resource nesting exceeds maximum depth of {MAX_NESTING_DEPTH}"
        )
    for declaration in declarations.values():
        if declaration.resources:
            _check_depth(declaration.resources, depth + 1)


def parse_specification(data: Union[Dict[str, Any], None]) -> SpecificationDocument:
    """
    Parse a raw mapping into a SpecificationDocument.

    Args:
        data: Mapping loaded from YAML/JSON

    Returns:
        The validated SpecificationDocument

    Raises:
        SpecificationError: If the document is malformed
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SpecificationError("Specification document must be a mapping")

    try:
        document = SpecificationDocument.model_validate(data)
    except ValidationError as e:
        messages = []
        for error in e.errors():
            path = ".".join(str(p) for p in error["loc"]) or "(root)"
            messages.append(f"{path}: {error['msg']}")
        raise SpecificationError(
            "Invalid specification: " + "; ".join(messages)
        ) from e

    _check_depth(document.resources)
    return document


def load_specification(path: Union[str, Path]) -> SpecificationDocument:
    """
    Load a specification document from a YAML or JSON file.

    Raises:
        SpecificationError: If the file cannot be parsed or is malformed
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise SpecificationError(f"Could not parse {path}: {e}") from e

    logger.debug(f"Loaded specification from {path}")
    return parse_specification(data)
