"""
Key Extractors

Derive the principal a policy charges from a request descriptor. The set of
strategies is closed (`KeyExtractorKind`); `create_key_extractor` is the
only way configuration builds one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from turnstile.core.exceptions import ExtractionError, InvalidConfigurationError

from .entities import RequestDescriptor
from .value_objects import KeyExtractorKind, RateLimitKey, normalize_address


class KeyExtractor(ABC):
    """Derives a rate limit key from a request descriptor."""

    kind: KeyExtractorKind

    @abstractmethod
    def components(self, descriptor: RequestDescriptor) -> tuple[str, ...]:
        """Return the key parts, raising ExtractionError when one is missing."""

    def extract(self, descriptor: RequestDescriptor) -> RateLimitKey:
        return RateLimitKey(kind=self.kind.value, parts=self.components(descriptor))

    @staticmethod
    def _require(value: Optional[str], attribute: str) -> str:
        if value is None or not value.strip():
            raise ExtractionError(attribute)
        return value


class AddressKeyExtractor(KeyExtractor):
    """Keys requests by client network address."""

    kind = KeyExtractorKind.ADDRESS

    def components(self, descriptor: RequestDescriptor) -> tuple[str, ...]:
        address = self._require(descriptor.address, "address")
        return (normalize_address(address),)


class IdentityKeyExtractor(KeyExtractor):
    """Keys requests by authenticated identity (account id or email)."""

    kind = KeyExtractorKind.IDENTITY

    def __init__(self, casefold: bool = False):
        self.casefold = casefold

    def components(self, descriptor: RequestDescriptor) -> tuple[str, ...]:
        identity = self._require(descriptor.identity, "identity").strip()
        return (identity.casefold() if self.casefold else identity,)


class HeaderKeyExtractor(KeyExtractor):
    """Keys requests by the value of one request header (e.g. an API key id)."""

    kind = KeyExtractorKind.HEADER

    def __init__(self, header_name: str):
        if not header_name or not header_name.strip():
            raise InvalidConfigurationError("header_name is required for header key extraction")
        self.header_name = header_name.strip().lower()

    def components(self, descriptor: RequestDescriptor) -> tuple[str, ...]:
        value = self._require(descriptor.header(self.header_name), f"header:{self.header_name}")
        return (self.header_name, value.strip())


class CompositeKeyExtractor(KeyExtractor):
    """
    Keys requests by the combination of several attributes.

    Every component is required; the key counts events per combination
    (e.g. one identity from one address). Independent per-address and
    per-identity limits are two policies, not one composite key.
    """

    kind = KeyExtractorKind.COMPOSITE

    def __init__(self, extractors: Sequence[KeyExtractor]):
        if len(extractors) < 2:
            raise InvalidConfigurationError("A composite key needs at least two components")
        if any(isinstance(extractor, CompositeKeyExtractor) for extractor in extractors):
            raise InvalidConfigurationError("Composite keys cannot be nested")
        self.extractors = tuple(extractors)

    def components(self, descriptor: RequestDescriptor) -> tuple[str, ...]:
        parts: list[str] = []
        for extractor in self.extractors:
            inner = extractor.components(descriptor)
            # Tag each component so (address=a, identity=b) and
            # (identity=a, address=b) never encode alike.
            parts.append(extractor.kind.value)
            parts.append(str(len(inner)))
            parts.extend(inner)
        return tuple(parts)


def create_key_extractor(kind: KeyExtractorKind | str, **options: Any) -> KeyExtractor:
    """
    Factory for key extractors.

    Args:
        kind: Extractor kind or its string value
        **options: `casefold` for identity, `header_name` for header,
            `components` (list of kinds) for composite

    Raises:
        InvalidConfigurationError: Unknown kind or missing options
    """
    try:
        kind = KeyExtractorKind(kind)
    except ValueError as e:
        raise InvalidConfigurationError(f"Unknown key extractor kind: {kind}") from e

    if kind is KeyExtractorKind.ADDRESS:
        return AddressKeyExtractor()
    if kind is KeyExtractorKind.IDENTITY:
        return IdentityKeyExtractor(casefold=bool(options.get("casefold", False)))
    if kind is KeyExtractorKind.HEADER:
        return HeaderKeyExtractor(header_name=options.get("header_name") or "")

    components = options.get("components") or ()
    extractors = [
        create_key_extractor(component, header_name=options.get("header_name"), casefold=options.get("casefold", False))
        for component in components
    ]
    return CompositeKeyExtractor(extractors)
