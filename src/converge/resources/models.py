"""Resource model: declared infrastructure objects and the references between them."""

import hashlib
import json
import os
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set

from converge.utils.errors import ErrorContext, ValidationError

SECRET_KIND = "secret"

_LITERAL_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class ResourceRef:
    """Observing pointer to another resource, or to one of its outputs.

    ``attribute`` of None refers to the provider-assigned id of the target.
    """

    kind: str
    name: str
    attribute: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, text: str) -> "ResourceRef":
        """Parse ``kind.name`` or ``kind.name.attribute``."""
        parts = text.split(".", 2) if isinstance(text, str) else []
        if len(parts) < 2 or not all(parts):
            raise ValidationError(
                f"Invalid reference '{text}': expected 'kind.name' or 'kind.name.attribute'"
            )
        return cls(kind=parts[0], name=parts[1], attribute=parts[2] if len(parts) == 3 else None)

    def __str__(self) -> str:
        return f"{self.key}.{self.attribute}" if self.attribute else self.key


_NO_DEFAULT = object()


@dataclass(frozen=True)
class EnvOverride:
    """Attribute value taken from the process environment at load time."""

    var: str
    default: Any = _NO_DEFAULT

    @property
    def has_default(self) -> bool:
        return self.default is not _NO_DEFAULT

    def resolve(self, environ: Optional[Mapping[str, str]] = None) -> Any:
        environ = os.environ if environ is None else environ
        if self.var in environ:
            return environ[self.var]
        if self.has_default:
            return self.default
        raise ValidationError(
            f"Environment variable '{self.var}' is not set and has no default",
            suggestions=[f"export {self.var}=... or add a 'default' to the override"]
        )


def iter_references(value: Any) -> Iterator[ResourceRef]:
    """Yield every ResourceRef nested anywhere inside an attribute value."""
    if isinstance(value, ResourceRef):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def check_value(value: Any, path: str) -> None:
    """Raise ValidationError unless value is a literal, override or reference."""
    if isinstance(value, (ResourceRef, EnvOverride)) or isinstance(value, _LITERAL_TYPES):
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"Attribute '{path}' has non-string key {key!r}")
            check_value(item, f"{path}.{key}")
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            check_value(item, f"{path}[{i}]")
        return
    raise ValidationError(
        f"Attribute '{path}' has unsupported value of type {type(value).__name__}"
    )


def resolve_overrides(value: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Replace EnvOverride values with their environment value."""
    if isinstance(value, EnvOverride):
        return value.resolve(environ)
    if isinstance(value, Mapping):
        return {k: resolve_overrides(v, environ) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_overrides(v, environ) for v in value]
    return value


def resolve_references(value: Any, lookup: Callable[[ResourceRef], Any]) -> Any:
    """Replace ResourceRefs with concrete values obtained from ``lookup``."""
    if isinstance(value, ResourceRef):
        return lookup(value)
    if isinstance(value, EnvOverride):
        return value.resolve()
    if isinstance(value, Mapping):
        return {k: resolve_references(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_references(v, lookup) for v in value]
    return value


def canonicalize(value: Any) -> Any:
    """JSON-safe form of an attribute value, used for diffing and state."""
    if isinstance(value, ResourceRef):
        return {"$ref": str(value)}
    if isinstance(value, EnvOverride):
        return canonicalize(value.resolve())
    if isinstance(value, Mapping):
        return {k: canonicalize(v) for k, v in sorted(value.items())}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def fingerprint(value: Any) -> str:
    """Stable hash of a canonical value."""
    payload = json.dumps(canonicalize(value), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class Resource:
    """A single declared infrastructure object and its desired attributes."""

    kind: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"

    def references(self) -> List[ResourceRef]:
        return list(iter_references(self.attributes))

    def dependencies(self) -> Set[str]:
        """Keys of resources that must be up to date before this one."""
        deps = {ref.key for ref in self.references()}
        deps.update(self.depends_on)
        deps.discard(self.key)
        return deps

    def validate(
        self,
        declared_keys: Iterable[str],
        required_attributes: Iterable[str] = ()
    ) -> None:
        """Check attribute values, required attributes and reference targets.

        Raises:
            ValidationError: On the first problem found
        """
        context = ErrorContext(resource_key=self.key, resource_kind=self.kind)
        declared = set(declared_keys)

        if not self.kind or not self.name:
            raise ValidationError("Resource kind and name must be non-empty", context=context)

        for attr_name, value in self.attributes.items():
            try:
                check_value(value, attr_name)
            except ValidationError as e:
                raise ValidationError(f"{self.key}: {e.message}", context=context) from e

        missing = [attr for attr in required_attributes if attr not in self.attributes]
        if missing:
            raise ValidationError(
                f"{self.key}: missing required attribute(s): {', '.join(missing)}",
                context=context
            )

        for ref in self.references():
            if ref.key == self.key:
                raise ValidationError(f"{self.key}: resource references itself", context=context)
            if ref.key not in declared:
                raise ValidationError(
                    f"{self.key}: reference '{ref}' targets undeclared resource '{ref.key}'",
                    context=context
                )

        for dep_key in self.depends_on:
            if dep_key not in declared:
                raise ValidationError(
                    f"{self.key}: depends_on targets undeclared resource '{dep_key}'",
                    context=context
                )

    def canonical_attributes(self) -> Dict[str, Any]:
        return canonicalize(self.attributes)

    def with_defaults(self, defaults: Mapping[str, Any]) -> "Resource":
        """Copy of this resource with ``defaults`` merged beneath its attributes."""
        merged = dict(defaults)
        merged.update(self.attributes)
        return replace(self, attributes=merged)


@dataclass
class GeneratePolicy:
    """Constraints for a generated secret value."""

    length: int = 32
    lowercase: bool = True
    uppercase: bool = True
    digits: bool = True
    special: bool = True
    special_chars: str = "!#$%&*()-_=+[]{}<>:?"

    def character_classes(self) -> List[str]:
        classes = []
        if self.lowercase:
            classes.append("abcdefghijklmnopqrstuvwxyz")
        if self.uppercase:
            classes.append("ABCDEFGHIJKLMNOPQRSTUVWXYZ")
        if self.digits:
            classes.append("0123456789")
        if self.special and self.special_chars:
            classes.append(self.special_chars)
        return classes

    def validate(self) -> None:
        classes = self.character_classes()
        if not classes:
            raise ValidationError("Secret generation policy enables no character class")
        if self.length < len(classes):
            raise ValidationError(
                f"Secret length {self.length} is shorter than the {len(classes)} "
                "required character classes"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "length": self.length,
            "lowercase": self.lowercase,
            "uppercase": self.uppercase,
            "digits": self.digits,
            "special": self.special,
            "special_chars": self.special_chars,
        }

    def fingerprint(self) -> str:
        return fingerprint(self.to_dict())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GeneratePolicy":
        unknown = set(data) - set(cls().to_dict())
        if unknown:
            raise ValidationError(
                f"Unknown secret generation option(s): {', '.join(sorted(unknown))}"
            )
        policy = cls(**dict(data))
        if not isinstance(policy.length, int) or isinstance(policy.length, bool):
            raise ValidationError("Secret generation 'length' must be an integer")
        return policy


@dataclass
class Secret(Resource):
    """Resource whose value is generated or supplied, and written as versions.

    Exactly one of ``generate`` (a GeneratePolicy mapping) or ``value`` must be
    declared.
    """

    @property
    def policy(self) -> Optional[GeneratePolicy]:
        data = self.attributes.get("generate")
        if data is None:
            return None
        if data is True:
            data = {}
        return GeneratePolicy.from_mapping(data)

    @property
    def supplied_value(self) -> Any:
        return self.attributes.get("value")

    def policy_fingerprint(self, resolved: Optional[Mapping[str, Any]] = None) -> str:
        """Fingerprint of whatever decides the secret's value.

        A supplied value is fingerprinted from ``resolved`` when given, so a
        referenced value is compared by what it resolves to.
        """
        policy = self.policy
        if policy is not None:
            return "generate:" + policy.fingerprint()
        value = self.supplied_value if resolved is None else resolved.get("value")
        return "value:" + fingerprint(value)

    def validate(
        self,
        declared_keys: Iterable[str],
        required_attributes: Iterable[str] = ()
    ) -> None:
        super().validate(declared_keys, required_attributes)
        context = ErrorContext(resource_key=self.key, resource_kind=self.kind)
        has_generate = "generate" in self.attributes
        has_value = "value" in self.attributes
        if has_generate == has_value:
            raise ValidationError(
                f"{self.key}: declare exactly one of 'generate' or 'value'",
                context=context
            )
        if has_generate:
            generate = self.attributes["generate"]
            if generate is not True and not isinstance(generate, Mapping):
                raise ValidationError(
                    f"{self.key}: 'generate' must be true or a mapping of options",
                    context=context
                )
            try:
                self.policy.validate()
            except ValidationError as e:
                raise ValidationError(f"{self.key}: {e.message}", context=context) from e


def build_resource(
    kind: str,
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
    depends_on: Optional[Iterable[str]] = None
) -> Resource:
    """Create a Resource, or a Secret for the secret kind."""
    cls = Secret if kind == SECRET_KIND else Resource
    return cls(
        kind=kind,
        name=name,
        attributes=dict(attributes or {}),
        depends_on=list(depends_on or []),
    )
