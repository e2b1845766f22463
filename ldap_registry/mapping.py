"""
Mapping of directory attributes onto canonical entity properties.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

from ldap_registry.config import ConfigurationError
from ldap_registry.directory import SearchResult
from ldap_registry.models import EntityRecord
from ldap_registry.timestamps import TimestampFormat

logger = logging.getLogger(__name__)

CONTENT_MODEL_URI = 'http://www.alfresco.org/model/content/1.0'

DEFAULT_NAMESPACE_PREFIXES = {
    'cm': CONTENT_MODEL_URI,
}


class PropertyNameResolver:
    """
    Resolves configured property keys to canonical property names.

    ``cm:userName`` becomes ``{http://www.alfresco.org/model/content/1.0}userName``.
    Keys that are already in ``{uri}local`` form, or carry no prefix, are
    returned unchanged.
    """

    def __init__(self, prefixes: Optional[Dict[str, str]] = None):
        self.prefixes = dict(DEFAULT_NAMESPACE_PREFIXES)
        if prefixes:
            self.prefixes.update(prefixes)

    def resolve(self, key: str) -> str:
        if key.startswith('{') or ':' not in key:
            return key
        prefix, local_name = key.split(':', 1)
        uri = self.prefixes.get(prefix)
        if uri is None:
            raise ConfigurationError(f"Namespace prefix '{prefix}' is not registered (property '{key}')")
        return f"{{{uri}}}{local_name}"


class AttributeMapper:
    """
    Turns search results into :class:`EntityRecord` objects.

    ``mapping`` maps property keys to directory attribute names (or None for
    properties that only ever take their default), ``defaults`` maps property
    keys to the value used when the attribute is absent.
    """

    def __init__(self, mapping: Dict[str, Optional[str]], defaults: Optional[Dict[str, str]],
                 timestamp_attribute: str, timestamp_format: TimestampFormat,
                 name_resolver: Optional[PropertyNameResolver] = None,
                 extra_attributes: Iterable[str] = ()):
        self.name_resolver = name_resolver or PropertyNameResolver()
        self.timestamp_attribute = timestamp_attribute
        self.timestamp_format = timestamp_format

        # Resolve every key once; mapping and defaults are read-only from here on
        self._mapping = [(self.name_resolver.resolve(key), attribute) for key, attribute in mapping.items()]
        self._defaults = {self.name_resolver.resolve(key): value
                          for key, value in (defaults or {}).items() if value is not None}

        attribute_set = set(extra_attributes)
        attribute_set.add(timestamp_attribute)
        attribute_set.update(attribute for attribute in mapping.values() if attribute)
        self.returning_attributes = sorted(attribute_set)

    @property
    def mapped_properties(self) -> Set[str]:
        return {name for name, _ in self._mapping}

    def properties_for(self, result: SearchResult) -> Dict[str, str]:
        properties = {}
        for name, attribute_name in self._mapping:
            attribute = result.attributes.get(attribute_name) if attribute_name else None
            if attribute is not None:
                value = attribute.first()
                if value is not None:
                    properties[name] = value if isinstance(value, str) else str(value)
            elif name in self._defaults:
                properties[name] = self._defaults[name]
        return properties

    def map(self, result: SearchResult, members: Iterable[str] = (),
            overrides: Optional[Dict[str, str]] = None) -> EntityRecord:
        """
        Map a result to a record.

        ``overrides`` are canonical property values applied after mapping.

        Raises:
            ProtocolError: If the modification timestamp does not parse
        """
        last_modified = None
        timestamp = result.attributes.get(self.timestamp_attribute)
        if timestamp is not None:
            last_modified = self.timestamp_format.parse(timestamp.first())

        properties = self.properties_for(result)
        if overrides:
            properties.update(overrides)

        return EntityRecord(
            source_id=result.dn,
            last_modified=last_modified,
            properties=properties,
            members=frozenset(members)
        )


def build_mapping(configured: Optional[Dict[str, Optional[str]]], forced_key: str,
                  forced_attribute: str) -> Dict[str, Optional[str]]:
    """Copy a configured mapping and force ``forced_key`` onto ``forced_attribute``."""
    mapping = dict(configured or {})
    mapping[forced_key] = forced_attribute
    return mapping


def attribute_list(*names: str) -> List[str]:
    """Attribute names without blanks or duplicates, order kept."""
    seen = []
    for name in names:
        if name and name not in seen:
            seen.append(name)
    return seen
