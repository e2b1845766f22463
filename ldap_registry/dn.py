"""
Distinguished name helpers.

Parsing is delegated to ldap3. On top of it this module normalizes DNs for
comparison, works out ancestor relationships, and decides whether the user
and group search bases are disjoint so that member DNs can be classified
without a directory round-trip.
"""

import logging
from collections import namedtuple
from string import hexdigits
from typing import Dict, Iterable, List, Sequence, Tuple, Union

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

logger = logging.getLogger(__name__)


class InvalidDNError(ValueError):
    """Raised when a string does not parse as a distinguished name."""
    pass


def fix_escapes(dn: str) -> str:
    """
    Rewrite escaped spaces (``\\ ``) as their hex form (``\\20``).

    ldap3 strips whitespace around attribute values, which would eat the
    space of a trailing escaped blank and leave a dangling backslash behind.
    Both spellings denote the same value once unescaped.
    """
    if '\\' not in dn:
        return dn

    fixed = []
    i = 0
    length = len(dn)
    while i < length:
        c = dn[i]
        if c == '\\' and i + 1 < length:
            if dn[i + 1] == ' ':
                fixed.append('\\20')
            else:
                fixed.append(dn[i:i + 2])
            i += 2
        else:
            fixed.append(c)
            i += 1
    return ''.join(fixed)


def unescape_value(value: str) -> str:
    """Decode RFC 4514 escapes (``\\XX`` hex pairs and ``\\c``) in an attribute value."""
    if '\\' not in value:
        return value

    decoded = bytearray()
    i = 0
    length = len(value)
    while i < length:
        c = value[i]
        if c == '\\' and i + 1 < length:
            pair = value[i + 1:i + 3]
            if len(pair) == 2 and all(ch in hexdigits for ch in pair):
                decoded.append(int(pair, 16))
                i += 3
            else:
                decoded.extend(value[i + 1].encode('utf-8'))
                i += 2
        else:
            decoded.extend(c.encode('utf-8'))
            i += 1
    return decoded.decode('utf-8', errors='replace')


class DistinguishedName:
    """
    A parsed distinguished name.

    RDNs are kept leaf first, as written. Attribute types are lowercased and
    values unescaped; the AVAs of a multi-valued RDN are sorted so that
    ``cn=a+sn=b`` equals ``sn=b+cn=a``.
    """

    __slots__ = ('dn', 'rdns')

    def __init__(self, dn: str, rdns: Tuple[Tuple[Tuple[str, str], ...], ...]):
        self.dn = dn
        self.rdns = rdns

    @classmethod
    def parse(cls, dn: str) -> 'DistinguishedName':
        """
        Parse a DN string.

        Raises:
            InvalidDNError: If the string is not a valid DN
        """
        if not dn or not dn.strip():
            # The root DSE
            return cls('', ())

        try:
            components = parse_dn(fix_escapes(dn), escape=False, strip=True)
        except LDAPInvalidDnError as e:
            raise InvalidDNError(f"Invalid distinguished name '{dn}': {e}") from e

        rdns = []
        current = []
        for attribute_type, attribute_value, separator in components:
            current.append((attribute_type.lower(), unescape_value(attribute_value)))
            if separator != '+':
                rdns.append(tuple(sorted(current)))
                current = []
        if current:
            rdns.append(tuple(sorted(current)))

        return cls(dn, tuple(rdns))

    def casefold(self) -> 'DistinguishedName':
        """Return a copy with lowercased values, suitable for case-insensitive comparison."""
        return DistinguishedName(
            self.dn.lower(),
            tuple(tuple((t, v.lower()) for t, v in rdn) for rdn in self.rdns)
        )

    def is_within(self, base: 'DistinguishedName') -> bool:
        """True if this DN equals ``base`` or lies below it."""
        depth = len(base.rdns)
        if depth > len(self.rdns):
            return False
        if depth == 0:
            return True
        return self.rdns[-depth:] == base.rdns

    def leaf_attributes(self) -> Dict[str, str]:
        """Attributes of the leaf (left-most) RDN, keyed by lowercased attribute type."""
        if not self.rdns:
            return {}
        return dict(self.rdns[0])

    def __len__(self) -> int:
        return len(self.rdns)

    def __eq__(self, other) -> bool:
        if not isinstance(other, DistinguishedName):
            return NotImplemented
        return self.rdns == other.rdns

    def __hash__(self) -> int:
        return hash(self.rdns)

    def __str__(self) -> str:
        return self.dn

    def __repr__(self) -> str:
        return f"DistinguishedName({self.dn!r})"


def parse_distinguished_name(dn: str) -> DistinguishedName:
    """Parse ``dn``, raising :class:`InvalidDNError` on failure."""
    return DistinguishedName.parse(dn)


def normalize_dn(dn: Union[str, DistinguishedName]) -> DistinguishedName:
    """Parse (if needed) and casefold a DN for comparison."""
    if isinstance(dn, DistinguishedName):
        return dn.casefold()
    return DistinguishedName.parse(dn).casefold()


def split_search_bases(value: Union[str, Sequence[str], None]) -> List[str]:
    """
    Turn a configured search base setting into a list of base DNs.

    Accepts either a list or a single colon-separated string.
    """
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(':')
    else:
        parts = list(value)
    return [str(part).strip() for part in parts if part is not None and str(part).strip()]


def parse_search_bases(bases: Iterable[Union[str, DistinguishedName]]) -> List[DistinguishedName]:
    """Normalize every base, dropping duplicates while keeping order."""
    parsed = []
    for base in bases:
        name = normalize_dn(base)
        if name not in parsed:
            parsed.append(name)
    return parsed


def starts_with_any(name: DistinguishedName, bases: Iterable[DistinguishedName]) -> bool:
    """True if ``name`` lies within any of ``bases``."""
    return any(name.is_within(base) for base in bases)


def remove_overlapping(first: Sequence[DistinguishedName],
                       second: Sequence[DistinguishedName]) -> Tuple[List[DistinguishedName], List[DistinguishedName]]:
    """
    Pairwise eliminate bases that are ancestors or descendants of each other.

    Every pair (a, b) with a in ``first`` and b in ``second`` where one lies
    within the other removes both a and b. The inputs are not modified.
    """
    removed_first = set()
    removed_second = set()
    for a in first:
        for b in second:
            if a.is_within(b) or b.is_within(a):
                removed_first.add(a)
                removed_second.add(b)
    return ([a for a in first if a not in removed_first],
            [b for b in second if b not in removed_second])


DNPrefixSets = namedtuple('DNPrefixSets', ['users', 'groups', 'distinct_users', 'distinct_groups', 'disjoint'])
DNPrefixSets.__doc__ = """
Normalized user and group base DNs for one group query.

``users``/``groups`` hold every configured base, ``distinct_users``/
``distinct_groups`` what is left after overlap elimination, and ``disjoint``
is true when both remainders are non-empty.
"""


def compute_prefix_sets(user_bases: Iterable[Union[str, DistinguishedName]],
                        group_bases: Iterable[Union[str, DistinguishedName]]) -> DNPrefixSets:
    """
    Work out whether the user and group trees are disjoint.

    Raises:
        InvalidDNError: If any base does not parse
    """
    users = parse_search_bases(user_bases)
    groups = parse_search_bases(group_bases)
    distinct_users, distinct_groups = remove_overlapping(users, groups)
    disjoint = bool(distinct_users) and bool(distinct_groups)
    logger.debug(f"Group and user search bases are disjoint? {disjoint}")
    return DNPrefixSets(users, groups, distinct_users, distinct_groups, disjoint)
