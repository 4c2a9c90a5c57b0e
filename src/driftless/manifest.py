"""YAML manifest parsing and validation for declared resources.

A manifest looks like::

    environment: review
    resources:
      - type: aws.ec2.Vpc
        name: scorer
        properties:
          cidrBlock: 10.0.0.0/16
      - type: aws.rds.Instance
        name: scorer-db
        properties:
          username: ${env:DB_USER}
          password: ${secret:DB_PASSWORD}
          subnetGroup: ${aws.rds.SubnetGroup/scorer-db-subnet.id}
        options:
          depends_on: [aws.ec2.Vpc/scorer]
          timeouts: {create: 10m}
          protect: true
    exports:
      rdsEndpoint: ${aws.rds.Instance/scorer-db.endpoint}

String values may embed ``${...}`` tokens; ``$${`` escapes a literal ``${``.
A string that is exactly one reference or secret token becomes that value;
anything else containing a reference or secret becomes an interpolation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ValidationError
from .models import ResourceDeclaration, ResourceId, Timeouts
from .naming import validate_name, validate_type
from .secrets import SecretResolver
from .values import Interpolation, Reference

TOKEN_PATTERN = re.compile(r"\$\$\{|\$\{([^}]*)\}")

RESOURCE_KEYS = {"type", "name", "properties", "options"}
OPTION_KEYS = {"depends_on", "timeouts", "protect"}
TIMEOUT_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_reference(body: str) -> Reference:
    """Parse ``type/name.path.to.output`` into a :class:`Reference`."""
    resource_type, sep, rest = body.partition("/")
    name, dot, path = rest.partition(".")
    if not sep or not dot or not path:
        raise ValidationError(
            "reference", body, "Expected '<type>/<name>.<output>' (e.g., 'aws.ec2.Vpc/main.id')"
        )
    validate_type(resource_type)
    validate_name(name)
    return Reference(ResourceId(resource_type, name), tuple(path.split(".")))


def parse_timeout(value: Any, field_name: str) -> float | None:
    """Parse ``30``, ``"30s"``, ``"5m"`` or ``"1h"`` into seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    elif isinstance(value, str) and value[-1:] in TIMEOUT_UNITS and value[:-1].isdigit():
        seconds = float(int(value[:-1]) * TIMEOUT_UNITS[value[-1]])
    else:
        raise ValidationError(field_name, value, "Expected seconds or a duration like '30s', '5m'")
    if seconds <= 0:
        raise ValidationError(field_name, value, "Timeout must be positive")
    return seconds


class ValueParser:
    """Turns raw YAML values into configuration values with references and secrets."""

    def __init__(self, resolver: SecretResolver) -> None:
        self._resolver = resolver

    def parse(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._parse_string(value)
        if isinstance(value, dict):
            return {str(k): self.parse(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.parse(v) for v in value]
        return value

    def _parse_token(self, body: str) -> Any:
        body = body.strip()
        if body.startswith("env:"):
            return self._resolver.env(body[len("env:") :])
        if body.startswith("secret:"):
            return self._resolver.secret(body[len("secret:") :])
        return parse_reference(body)

    def _parse_string(self, text: str) -> Any:
        parts: list[Any] = []
        literal: list[str] = []
        pos = 0
        for match in TOKEN_PATTERN.finditer(text):
            literal.append(text[pos : match.start()])
            pos = match.end()
            if match.group(0) == "$${":
                literal.append("${")
                continue
            token = self._parse_token(match.group(1))
            if isinstance(token, str):
                literal.append(token)
                continue
            if "".join(literal):
                parts.append("".join(literal))
            literal = []
            parts.append(token)
        literal.append(text[pos:])
        if "".join(literal):
            parts.append("".join(literal))

        if not any(not isinstance(p, str) for p in parts):
            return "".join(parts)
        if len(parts) == 1:
            return parts[0]
        return Interpolation(tuple(parts))


def _parse_declaration(entry: Any, index: int, parser: ValueParser) -> ResourceDeclaration:
    where = f"resources[{index}]"
    if not isinstance(entry, dict):
        raise ValidationError(where, entry, "Each resource must be a mapping")

    unknown = set(entry) - RESOURCE_KEYS
    if unknown:
        raise ValidationError(where, sorted(unknown), "Unknown resource keys")

    resource_type = entry.get("type")
    name = entry.get("name")
    if not isinstance(resource_type, str):
        raise ValidationError(f"{where}.type", resource_type, "Resource type is required")
    if not isinstance(name, str):
        raise ValidationError(f"{where}.name", name, "Resource name is required")
    validate_type(resource_type)
    validate_name(name)

    properties = entry.get("properties") or {}
    if not isinstance(properties, dict):
        raise ValidationError(f"{where}.properties", properties, "Properties must be a mapping")

    options = entry.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationError(f"{where}.options", options, "Options must be a mapping")
    unknown = set(options) - OPTION_KEYS
    if unknown:
        raise ValidationError(f"{where}.options", sorted(unknown), "Unknown options")

    depends_on = tuple(ResourceId.parse(str(d)) for d in options.get("depends_on") or [])

    raw_timeouts = options.get("timeouts") or {}
    if not isinstance(raw_timeouts, dict) or set(raw_timeouts) - {"create", "update", "delete"}:
        raise ValidationError(
            f"{where}.options.timeouts", raw_timeouts, "Expected keys create/update/delete"
        )
    timeouts = Timeouts(
        **{
            action: parse_timeout(value, f"{where}.options.timeouts.{action}")
            for action, value in raw_timeouts.items()
        }
    )

    return ResourceDeclaration(
        id=ResourceId(resource_type, name),
        config=parser.parse(properties),
        depends_on=depends_on,
        timeouts=timeouts,
        protect=bool(options.get("protect", False)),
    )


@dataclass(frozen=True)
class StackManifest:
    """Parsed manifest: ordered declarations plus exported outputs."""

    resources: tuple[ResourceDeclaration, ...] = ()
    exports: dict[str, Any] = field(default_factory=dict)
    environment: str | None = None

    @classmethod
    def from_dict(
        cls,
        d: dict[str, Any],
        resolver: SecretResolver | None = None,
    ) -> StackManifest:
        if not isinstance(d, dict):
            raise ValidationError("manifest", d, "Manifest must be a mapping")
        parser = ValueParser(resolver or SecretResolver())

        environment = d.get("environment")
        if environment is not None:
            validate_name(str(environment), "environment")
            environment = str(environment)

        raw_resources = d.get("resources") or []
        if not isinstance(raw_resources, list):
            raise ValidationError("resources", raw_resources, "Resources must be a list")
        resources = tuple(
            _parse_declaration(entry, index, parser) for index, entry in enumerate(raw_resources)
        )

        raw_exports = d.get("exports") or {}
        if not isinstance(raw_exports, dict):
            raise ValidationError("exports", raw_exports, "Exports must be a mapping")
        exports = {str(name): parser.parse(value) for name, value in raw_exports.items()}

        return cls(resources=resources, exports=exports, environment=environment)

    @classmethod
    def from_yaml(cls, yaml_str: str, resolver: SecretResolver | None = None) -> StackManifest:
        import yaml

        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise ValidationError("manifest", "<yaml>", f"Invalid YAML: {e}") from e
        return cls.from_dict(data or {}, resolver)

    @classmethod
    def from_file(cls, path: str, resolver: SecretResolver | None = None) -> StackManifest:
        with open(path) as f:
            return cls.from_yaml(f.read(), resolver)

    def declaration(self, resource_id: ResourceId) -> ResourceDeclaration | None:
        for declaration in self.resources:
            if declaration.id == resource_id:
                return declaration
        return None
