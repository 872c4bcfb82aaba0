"""
Schema Validation - JSON Schema validation of resource attributes.

Provider plugins describe each resource type's attributes with a JSON Schema
(Draft 7). Desired attributes are validated against it at plan time, before
any diffing or provider calls.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from errors import SchemaValidationError, UnknownResourceTypeError
from graph import DependencyGraph

logger = logging.getLogger(__name__)


def validate_attribute_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a resource type schema is a valid JSON Schema.

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def validate_attributes(
    attributes: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate resource attributes against a JSON Schema.

    Args:
        attributes: The desired attributes of a resource
        schema: The resource type's JSON Schema

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = sorted(validator.iter_errors(attributes), key=lambda e: list(e.path))

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def validate_graph(graph: DependencyGraph, registry: Any) -> None:
    """
    Check every node is served by a provider and satisfies its type schema.

    Args:
        graph: The dependency graph to check
        registry: A PluginRegistry resolving resource type schemas

    Raises:
        UnknownResourceTypeError: If no provider serves a node's type
        SchemaValidationError: If a node's attributes fail validation
    """
    for node in graph:
        if not registry.has_resource_type(node.resource_type):
            raise UnknownResourceTypeError(node.logical_id, node.resource_type)

        schema = registry.get_resource_type_schema(node.resource_type)
        if not schema.attributes_schema:
            continue

        is_valid, error = validate_attributes(node.attributes, schema.attributes_schema)
        if not is_valid:
            raise SchemaValidationError(
                f"Resource '{node.logical_id}' ({node.resource_type}): {error}"
            )
