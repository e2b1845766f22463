"""
Registry facade over one or more user and group search bases.

:class:`LDAPUserRegistry` ties the query planner, paged query executor,
attribute mappers, range fetcher and membership resolver together and exposes
the operations a synchronization job needs: listing names, syncing groups
with resolved membership, streaming people and resolving a user id to its DN.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from ldap3.utils.conv import escape_filter_chars

from ldap_registry.config import REGISTRY_DEFAULTS, ConfigurationError, validate_search_bases
from ldap_registry.directory import ConnectionFactory, SearchResult, close_quietly
from ldap_registry.dn import compute_prefix_sets
from ldap_registry.errors import DataIntegrityError, ProtocolError, ResolutionNotFound
from ldap_registry.logging_setup import audit_logger
from ldap_registry.mapping import AttributeMapper, PropertyNameResolver, build_mapping
from ldap_registry.membership import MembershipResolver
from ldap_registry.models import EntityRecord, IntegrityPolicy, group_authority
from ldap_registry.persons import PersonCollection
from ldap_registry.planner import QueryPlanner
from ldap_registry.query import PagedQuery, SearchHandler, process_query
from ldap_registry.ranges import RangeBatchFetcher, member_request
from ldap_registry.timestamps import TimestampFormat

logger = logging.getLogger(__name__)


class NameCollector(SearchHandler):
    """Collects the id attribute of every result, applying the missing-id policy."""

    def __init__(self, kind: str, id_attribute: str, strict: bool,
                 to_name: Callable[[str], str] = str):
        self.kind = kind
        self.id_attribute = id_attribute
        self.strict = strict
        self.to_name = to_name
        self.names: List[str] = []

    def process(self, result: SearchResult) -> None:
        attribute = result.attributes.get(self.id_attribute)
        if attribute is None or attribute.first() is None:
            message = f"{self.kind} missing id attribute DN = {result.dn} att = {self.id_attribute}"
            if self.strict:
                raise DataIntegrityError(message)
            logger.warning(message)
            return

        name = self.to_name(str(attribute.first()))
        logger.debug(f"{self.kind} DN recognized: {name}")
        self.names.append(name)


class LDAPUserRegistry:
    """
    Users and groups of a directory spread over several search bases.

    Args:
        config: The ``registry`` configuration section
        connection_factory: Source of directory sessions
        name_resolver: Resolver for ``prefix:local`` property keys; built
            from ``namespace_prefixes`` when omitted

    Raises:
        ConfigurationError: If a search base is not a valid DN, a
            differential query has no single placeholder, or a property key
            uses an unknown namespace prefix
    """

    def __init__(self, config: Dict[str, Any], connection_factory: ConnectionFactory,
                 name_resolver: Optional[PropertyNameResolver] = None):
        settings = dict(REGISTRY_DEFAULTS)
        settings.update({key: value for key, value in config.items() if value is not None})

        self.connection_factory = connection_factory
        self.active = bool(settings['active'])

        self.user_search_bases = validate_search_bases(settings.get('user_search_base'), 'registry.user_search_base')
        self.group_search_bases = validate_search_bases(settings.get('group_search_base'), 'registry.group_search_base')

        self.user_id_attribute = settings['user_id_attribute']
        self.group_id_attribute = settings['group_id_attribute']
        self.member_attribute = settings['member_attribute']
        self.person_type = settings['person_type']
        self.group_type = settings['group_type']
        self.person_query = settings['person_query']
        self.group_query = settings['group_query']

        self.query_batch_size = int(settings['query_batch_size'])
        self.attribute_batch_size = int(settings['attribute_batch_size'])
        self.enable_progress_estimation = bool(settings['enable_progress_estimation'])
        self.policy = IntegrityPolicy.from_config(settings)

        self.timestamp_format = TimestampFormat(settings['timestamp_format'])
        try:
            self.person_planner = QueryPlanner(settings['person_query'], settings['person_differential_query'],
                                               self.timestamp_format)
            self.group_planner = QueryPlanner(settings['group_query'], settings['group_differential_query'],
                                              self.timestamp_format)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self.name_resolver = name_resolver or PropertyNameResolver(settings['namespace_prefixes'])
        self.authority_name_property = self.name_resolver.resolve(settings['authority_name_property'])

        timestamp_attribute = settings['modify_timestamp_attribute']
        self.person_mapper = AttributeMapper(
            build_mapping(settings['person_attribute_mapping'], settings['user_name_property'], self.user_id_attribute),
            settings['person_attribute_defaults'],
            timestamp_attribute,
            self.timestamp_format,
            self.name_resolver
        )
        self.group_mapper = AttributeMapper(
            build_mapping(settings['group_attribute_mapping'], settings['authority_name_property'], self.group_id_attribute),
            settings['group_attribute_defaults'],
            timestamp_attribute,
            self.timestamp_format,
            self.name_resolver,
            extra_attributes=[member_request(self.member_attribute, self.attribute_batch_size)]
        )

        logger.info(f"Registry configured with {len(self.user_search_bases)} user base(s) and "
                    f"{len(self.group_search_bases)} group base(s), active={self.active}")

    def is_active(self) -> bool:
        return self.active

    def person_mapped_properties(self) -> Set[str]:
        return self.person_mapper.mapped_properties

    def group_mapped_properties(self) -> Set[str]:
        return self.group_mapper.mapped_properties

    def list_person_names(self, search_bases: Optional[Sequence[str]] = None,
                          query: Optional[str] = None) -> List[str]:
        """
        User ids of every person matching ``query`` (the person query by default).

        Raises:
            DataIntegrityError: If a person lacks the user id and the policy is strict
            ProtocolError: If the directory fails
        """
        collector = NameCollector('User', self.user_id_attribute, self.policy.error_on_missing_uid)
        process_query(collector, self.connection_factory,
                      self._bases(search_bases, self.user_search_bases),
                      query or self.person_query, [self.user_id_attribute], self.query_batch_size)
        return collector.names

    def list_group_names(self, search_bases: Optional[Sequence[str]] = None,
                         query: Optional[str] = None) -> List[str]:
        """
        Authority names (``GROUP_<gid>``) of every group matching ``query``.

        Raises:
            DataIntegrityError: If a group lacks the group id and the policy is strict
            ProtocolError: If the directory fails
        """
        collector = NameCollector('Group', self.group_id_attribute, self.policy.error_on_missing_gid,
                                  group_authority)
        process_query(collector, self.connection_factory,
                      self._bases(search_bases, self.group_search_bases),
                      query or self.group_query, [self.group_id_attribute], self.query_batch_size)
        return collector.names

    def sync_groups(self, modified_since: Optional[datetime] = None,
                    search_bases: Optional[Sequence[str]] = None) -> List[EntityRecord]:
        """
        Groups modified since ``modified_since`` (all groups when None) with
        their membership resolved.

        Groups sharing a group id are merged into one record, or rejected
        when ``error_on_duplicate_gid`` is set.

        Returns:
            Group records ordered by authority name

        Raises:
            DataIntegrityError: On malformed data the policy treats as fatal
            ProtocolError: If the directory fails
        """
        bases = self._bases(search_bases, self.group_search_bases)
        prefixes = compute_prefix_sets(self.user_search_bases, self.group_search_bases)
        query = self.group_planner.query_for(modified_since)
        groups: Dict[str, EntityRecord] = {}

        # Member lookups get their own session so they never disturb the paging cookie
        with self.connection_factory.open_session() as lookup_session:
            resolver = MembershipResolver(lookup_session, prefixes, self.user_id_attribute,
                                          self.group_id_attribute, self.person_type, self.group_type,
                                          self.policy)
            fetcher = RangeBatchFetcher(lookup_session, self.member_attribute, self.attribute_batch_size)

            with PagedQuery(self.connection_factory, bases, query,
                            self.group_mapper.returning_attributes, self.query_batch_size) as results:
                for result in results:
                    self._add_group(groups, result, resolver, fetcher)

        logger.info(f"Found {len(groups)} groups ({resolver.lookups} member lookups, "
                    f"{fetcher.requests} range requests)")
        return [groups[authority] for authority in sorted(groups)]

    def _add_group(self, groups: Dict[str, EntityRecord], result: SearchResult,
                   resolver: MembershipResolver, fetcher: RangeBatchFetcher) -> None:
        gid_attribute = result.attributes.get(self.group_id_attribute)
        if gid_attribute is None or gid_attribute.first() is None:
            if self.policy.error_on_missing_gid:
                raise DataIntegrityError(
                    f"Group {result.dn} does not have mandatory group id attribute {self.group_id_attribute}"
                )
            logger.warning(f"Missing GID on {result.dn}")
            return

        group_name = str(gid_attribute.first())
        authority = group_authority(group_name)

        existing = groups.get(authority)
        if existing is not None:
            if self.policy.error_on_duplicate_gid:
                raise DataIntegrityError(f"Duplicate group id found for {authority}")
            logger.warning(f"Duplicate gid found for {authority} -> merging definitions")

        logger.debug(f"Processing group: {authority}, from source: {result.dn}")
        members = resolver.resolve_all(group_name, fetcher.iter_values(result.dn, result.attributes))
        record = self.group_mapper.map(result, members, {self.authority_name_property: authority})

        groups[authority] = existing.merged_with(record) if existing is not None else record

    def stream_persons(self, modified_since: Optional[datetime] = None,
                       search_bases: Optional[Sequence[str]] = None) -> PersonCollection:
        """
        People modified since ``modified_since`` (everyone when None), fetched lazily.

        The returned collection holds an open session until it is exhausted
        or closed.
        """
        return PersonCollection(
            self.connection_factory,
            self._bases(search_bases, self.user_search_bases),
            self.person_planner.query_for(modified_since),
            self.person_mapper,
            self.user_id_attribute,
            policy=self.policy,
            batch_size=self.query_batch_size,
            estimate_size=self.enable_progress_estimation
        )

    def resolve_distinguished_name(self, user_id: str) -> str:
        """
        Find the DN of the person with user id ``user_id``.

        Each user base is searched in order for the person query combined
        with an escaped id match. Only an entry whose id equals ``user_id``
        ignoring case is accepted, since servers differ in how they compare
        whitespace and accented characters.

        Raises:
            ResolutionNotFound: If no base holds a matching person
            DataIntegrityError: If a candidate lacks the user id and the policy is strict
        """
        logger.debug(f"Resolving distinguished name for user id: {user_id}")
        query = f"(&{self.person_query}({self.user_id_attribute}={escape_filter_chars(user_id)}))"
        diagnostic = []

        for base in self.user_search_bases:
            try:
                with self.connection_factory.open_session() as session:
                    dn = self._find_user(session.search(base, query, [self.user_id_attribute]), user_id)
            except ProtocolError as e:
                logger.debug(f"User search in {base} failed: {e}")
                diagnostic.append(f"search {base}{query} failed: {e}")
                continue

            if dn is not None:
                audit_logger.log_dn_resolution(user_id, dn, len(self.user_search_bases))
                return dn
            diagnostic.append(f"search {base}{query} found no match")

        audit_logger.log_dn_resolution(user_id, None, len(self.user_search_bases))
        raise ResolutionNotFound(user_id, diagnostic)

    def _find_user(self, results, user_id: str) -> Optional[str]:
        try:
            for result in results:
                try:
                    uid_attribute = result.attributes.get(self.user_id_attribute)
                    if uid_attribute is None or uid_attribute.first() is None:
                        message = f"User returned by user search does not have mandatory user id attribute {result.dn}"
                        if self.policy.error_on_missing_uid:
                            raise DataIntegrityError(message)
                        logger.warning(message)
                    elif str(uid_attribute.first()).lower() == user_id.lower():
                        return result.dn
                finally:
                    close_quietly(result, 'search result')
        finally:
            close_quietly(results, 'search results')
        return None

    def _bases(self, search_bases: Optional[Sequence[str]], configured: List[str]) -> List[str]:
        if search_bases is None:
            return configured
        return validate_search_bases(search_bases, 'search_bases')
