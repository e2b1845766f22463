"""
Resolution of group member values into user and group references.

Members are recorded as ``<uid>`` for users and ``GROUP_<gid>`` for groups.
When the user and group search bases are disjoint, most DNs can be
classified from the DN alone; otherwise the entry is looked up to read its
object classes and id attribute. Values that are not DNs at all (such as
``memberUid`` values of a posixGroup) are passed through untouched.
"""

import logging
from typing import Iterable, Optional, Set

from ldap_registry.directory import DirectorySession
from ldap_registry.dn import DNPrefixSets, InvalidDNError, parse_distinguished_name, starts_with_any
from ldap_registry.errors import DataIntegrityError, ProtocolError
from ldap_registry.mapping import attribute_list
from ldap_registry.models import IntegrityPolicy, group_authority

logger = logging.getLogger(__name__)


class MembershipResolver:
    """
    Resolves the member values of one group query.

    ``session`` is the lookup session of the group query; the resolver only
    uses it and never closes it.
    """

    def __init__(self, session: DirectorySession, prefixes: DNPrefixSets,
                 user_id_attribute: str, group_id_attribute: str,
                 person_type: str, group_type: str,
                 policy: Optional[IntegrityPolicy] = None):
        self.session = session
        self.prefixes = prefixes
        self.user_id_attribute = user_id_attribute
        self.group_id_attribute = group_id_attribute
        self.person_type = person_type
        self.group_type = group_type
        self.policy = policy or IntegrityPolicy()
        self.lookups = 0

    def resolve_all(self, group_name: str, values: Iterable) -> Set[str]:
        members = set()
        for value in values:
            member = self.resolve(group_name, value)
            if member is not None:
                members.add(member)
        return members

    def resolve(self, group_name: str, value) -> Optional[str]:
        """
        Resolve one member value of group ``group_name``.

        Returns:
            The member reference, or None if the value was empty or skipped

        Raises:
            DataIntegrityError: If the member cannot be resolved and the
                policy says so
        """
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        if not value:
            return None

        try:
            name = parse_distinguished_name(value)
        except InvalidDNError:
            # Not a DN, so assume a group class like posixGroup that lists user names directly
            logger.debug(f"Member recognized as a plain name: {value}")
            return value

        comparable = name.casefold()

        if self.prefixes.disjoint:
            member = self._resolve_from_dn(name, comparable)
            if member is not None:
                return member

        if (starts_with_any(comparable, self.prefixes.users)
                or starts_with_any(comparable, self.prefixes.groups)):
            return self._resolve_by_lookup(group_name, value)

        return self._missing_member(group_name, value)

    def _resolve_from_dn(self, name, comparable) -> Optional[str]:
        rdn = name.leaf_attributes()

        user_id = rdn.get(self.user_id_attribute.lower())
        if user_id is not None and starts_with_any(comparable, self.prefixes.distinct_users):
            logger.debug(f"User DN recognized: {user_id}")
            return user_id

        group_id = rdn.get(self.group_id_attribute.lower())
        if group_id is not None and starts_with_any(comparable, self.prefixes.distinct_groups):
            logger.debug(f"Group DN recognized: {group_authority(group_id)}")
            return group_authority(group_id)

        return None

    def _resolve_by_lookup(self, group_name: str, dn: str) -> Optional[str]:
        names = attribute_list('objectclass', self.group_id_attribute, self.user_id_attribute)
        try:
            self.lookups += 1
            attributes = self.session.get_attributes(dn, names)
        except ProtocolError as e:
            if self.policy.error_on_missing_members:
                raise DataIntegrityError(
                    f"Failed to resolve member of group '{group_name}' with distinguished name {dn}: {e}"
                ) from e
            logger.warning(f"Failed to resolve member of group '{group_name}' with distinguished name {dn}: {e}")
            return None

        object_class = attributes.get('objectclass')
        if object_class is not None and object_class.has_value(self.person_type):
            user_id = attributes.get(self.user_id_attribute)
            if user_id is None or user_id.first() is None:
                message = f"User missing user id attribute DN = {dn} att = {self.user_id_attribute}"
                if self.policy.error_on_missing_uid:
                    raise DataIntegrityError(message)
                logger.warning(message)
                return None
            logger.debug(f"User DN recognized by directory lookup: {user_id.first()}")
            return str(user_id.first())

        if object_class is not None and object_class.has_value(self.group_type):
            group_id = attributes.get(self.group_id_attribute)
            if group_id is None or group_id.first() is None:
                message = f"Group missing group id attribute DN = {dn} att = {self.group_id_attribute}"
                if self.policy.error_on_missing_gid:
                    raise DataIntegrityError(message)
                logger.warning(message)
                return None
            logger.debug(f"Group DN recognized by directory lookup: {group_authority(group_id.first())}")
            return group_authority(group_id.first())

        return self._missing_member(group_name, dn)

    def _missing_member(self, group_name: str, dn: str) -> None:
        message = f"Failed to resolve member of group '{group_name}' with distinguished name: {dn}"
        if self.policy.error_on_missing_members:
            raise DataIntegrityError(message)
        logger.warning(message)
        return None
