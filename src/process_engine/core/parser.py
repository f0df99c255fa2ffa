"""
Workflow definition parser
"""
import json
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from jsonschema import Draft7Validator

from ..exceptions import EvaluationError, WorkflowParseError, WorkflowValidationError
from ..models.definition import (
    AutomatedActionNode, Edge, EndNode, EndOutcome, GatewayKind, GatewayNode,
    Node, NodeKind, StartNode, TaskNode, WorkflowDefinition
)
from .context import ContextManager


_MAPPING = {"type": "object", "additionalProperties": {"type": "string"}}

DEFINITION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "nodes"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "version": {"type": "integer", "minimum": 1},
        "name": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "nodes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["id", "type"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"enum": [kind.value for kind in NodeKind]},
                    "name": {"type": ["string", "null"]},
                    "outcome": {"enum": [outcome.value for outcome in EndOutcome]},
                    "gateway": {"enum": [kind.value for kind in GatewayKind]},
                    "assignee": {
                        "type": "object",
                        "properties": {
                            "user": {"type": "string"},
                            "role": {"type": "string"},
                            "expression": {"type": "string"},
                        },
                        "additionalProperties": False,
                    },
                    "fields": {"type": "array", "items": {"type": "string"}},
                    "input_mapping": _MAPPING,
                    "output_mapping": _MAPPING,
                    "due_in": {"type": ["integer", "null"], "minimum": 0},
                    "action": {"type": "string"},
                    "params": {"type": "object"},
                },
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["from", "to"],
                "properties": {
                    "from": {"type": "string"},
                    "to": {"type": "string"},
                    "guard": {"type": ["string", "null"]},
                    "default": {"type": "boolean"},
                    "name": {"type": ["string", "null"]},
                },
            },
        },
    },
}


class WorkflowParser:
    """Loads definitions from YAML/JSON documents and validates them"""

    def __init__(self, context_manager: ContextManager = None):
        self.context_manager = context_manager or ContextManager()
        self.validator = Draft7Validator(DEFINITION_SCHEMA)
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDefinition:
        """
        Parse a workflow definition

        Args:
            source: file path, YAML/JSON string or an already-decoded mapping

        Returns:
            WorkflowDefinition: validated definition
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path) or (isinstance(source, str) and "\n" not in source):
            path = Path(source)
            if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                return self.parse_file(path)

        if isinstance(source, (str, Path)):
            return self.parse_string(str(source))

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> WorkflowDefinition:
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> WorkflowDefinition:
        """Parse YAML (a superset of JSON) from a string"""
        return self.parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def parse_dict(self, data: Dict[str, Any]) -> WorkflowDefinition:
        """Build and validate a definition from a decoded document"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Workflow document must be a mapping, got {type(data).__name__}")
        if 'workflow' in data:
            data = data['workflow']

        schema_errors = sorted(self.validator.iter_errors(data), key=lambda e: list(e.path))
        if schema_errors:
            raise WorkflowValidationError(
                "Workflow document does not match schema",
                [self._format_schema_error(error) for error in schema_errors]
            )

        definition = WorkflowDefinition(
            id=data['id'],
            version=data.get('version', 1),
            name=data.get('name') or data['id'],
            description=data.get('description'),
            nodes=tuple(self._parse_node(node_data) for node_data in data['nodes']),
            edges=tuple(self._parse_edge(edge_data) for edge_data in data.get('edges', [])),
        )

        errors = definition.validate()
        errors.extend(self._check_expressions(definition))
        if errors:
            raise WorkflowValidationError(f"Workflow '{definition.id}' validation failed", errors)

        return definition

    def _parse_node(self, data: Dict[str, Any]) -> Node:
        kind = NodeKind(data['type'])
        node_id = data['id']
        name = data.get('name')

        if kind == NodeKind.START:
            return StartNode(id=node_id, name=name)
        if kind == NodeKind.END:
            return EndNode(id=node_id, name=name, outcome=EndOutcome(data.get('outcome', 'success')))
        if kind == NodeKind.GATEWAY:
            return GatewayNode(id=node_id, name=name, gateway=GatewayKind(data.get('gateway', 'exclusive')))
        if kind == NodeKind.TASK:
            return TaskNode(
                id=node_id,
                name=name,
                assignee=dict(data.get('assignee', {})),
                fields=tuple(data.get('fields', [])),
                input_mapping=dict(data.get('input_mapping', {})),
                output_mapping=dict(data.get('output_mapping', {})),
                due_in=data.get('due_in'),
            )
        return AutomatedActionNode(
            id=node_id,
            name=name,
            action=data.get('action', ''),
            params=dict(data.get('params', {})),
            output_mapping=dict(data.get('output_mapping', {})),
        )

    def _parse_edge(self, data: Dict[str, Any]) -> Edge:
        return Edge(
            source=data['from'],
            target=data['to'],
            guard=data.get('guard'),
            default=bool(data.get('default', False)),
            name=data.get('name'),
        )

    def _check_expressions(self, definition: WorkflowDefinition) -> list:
        """Reject malformed guards and mappings at load time"""
        errors = []
        expressions = [(f"guard of edge {edge.id}", edge.guard) for edge in definition.edges if edge.guard]
        for node in definition.nodes:
            for attr in ('input_mapping', 'output_mapping'):
                for target, expression in getattr(node, attr, {}).items():
                    expressions.append((f"{attr} '{target}' of node {node.id}", expression))
            if isinstance(node, TaskNode) and 'expression' in node.assignee:
                expressions.append((f"assignee of node {node.id}", node.assignee['expression']))

        for where, expression in expressions:
            try:
                self.context_manager.validate(expression)
            except EvaluationError as e:
                errors.append(f"Invalid {where}: {e.message}")
        return errors

    @staticmethod
    def _format_schema_error(error) -> str:
        location = "/".join(str(part) for part in error.path) or "<root>"
        return f"{location}: {error.message}"
