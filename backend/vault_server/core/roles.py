"""
Role bitfields and role sets.

A role is a 32-bit value:

    bits 31..16  category | subcategory (e.g. 0x0302 = store / roles)
    bits 15..0   function mask (READ, LIST, CREATE, UPDATE, DELETE)

A RoleSet keeps at most one entry per category/subcategory pair and merges
function bits on insert.

Invariants:
    - A valid role has a non-zero category and a non-zero function mask
    - RoleSet never holds two entries for the same category
    - to_csv() preserves insertion order; from_csv() drops invalid tokens

How to change safely:
    - Role values are persisted as decimal CSV; never renumber a subcategory
    - Add functions in unused bits only
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

# Functions
FUNCTION_READ = 0x0001
FUNCTION_LIST = 0x0002
FUNCTION_CREATE = 0x0100
FUNCTION_UPDATE = 0x0200
FUNCTION_DELETE = 0x0400

FUNCTION_READ_LIST = FUNCTION_READ | FUNCTION_LIST
FUNCTION_READONLY = 0x00FF
FUNCTION_MODIFY = 0xFF00
FUNCTION_ALL = 0xFFFF

# Categories (upper byte of the role category)
CATEGORY_SYSTEM = 0x0100
CATEGORY_ORG = 0x0200
CATEGORY_STORE = 0x0300

# Subcategories (lower byte of the role category)
SUBCATEGORY_CONF = 0x00
SUBCATEGORY_USER = 0x01
SUBCATEGORY_ROLES = 0x02
SUBCATEGORY_INVITE = 0x03
SUBCATEGORY_ORG = 0x04
SUBCATEGORY_STORE = 0x05
SUBCATEGORY_OBJECT = 0x06
SUBCATEGORY_TEMPLATE = 0x07

ROLE_MASK = 0xFFFFFFFF


def role(category: int, function: int) -> int:
    """Build a role from a category (with subcategory) and a function mask."""
    return ((category & 0xFFFF) << 16) | (function & 0xFFFF)


def role_category(r: int) -> int:
    return (r >> 16) & 0xFFFF


def role_subcategory(r: int) -> int:
    return (r >> 16) & 0xFF


def role_functions(r: int) -> int:
    return r & 0xFFFF


def role_is_valid(r: int) -> bool:
    # Category upper byte must name a real category; CONF subcategory is 0x00
    return 0 <= r <= ROLE_MASK and (role_category(r) & 0xFF00) != 0 and role_functions(r) != 0


def match_functions(from_role: int, to_role: int) -> bool:
    """True if ``to_role`` carries every function bit of ``from_role``."""
    ff = role_functions(from_role)
    return (ff & role_functions(to_role)) == ff


def match(from_role: int, to_role: int) -> bool:
    """Same category and ``to_role`` covers all of ``from_role``'s functions."""
    return role_category(from_role) == role_category(to_role) and match_functions(
        from_role, to_role
    )


def exact_match(from_role: int, to_role: int) -> bool:
    """Same category and identical function mask."""
    return role_category(from_role) == role_category(to_role) and role_functions(
        from_role
    ) == role_functions(to_role)


class RoleSet:
    """Ordered set of roles, one entry per category.

    Mutators return True when the set actually changed.
    """

    def __init__(self, roles: Iterable[int] | None = None) -> None:
        self._roles: list[int] = []
        if roles:
            self.add_roles(roles)

    def __iter__(self) -> Iterator[int]:
        return iter(self._roles)

    def __len__(self) -> int:
        return len(self._roles)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RoleSet):
            return NotImplemented
        return self._roles == other._roles

    def __repr__(self) -> str:
        return f"RoleSet([{', '.join(hex(r) for r in self._roles)}])"

    def roles(self) -> list[int]:
        return list(self._roles)

    def is_empty(self) -> bool:
        return not self._roles

    def copy(self) -> RoleSet:
        clone = RoleSet()
        clone._roles = list(self._roles)
        return clone

    def has_role(self, r: int) -> bool:
        return any(match(r, existing) for existing in self._roles)

    def has_exact_role(self, r: int) -> bool:
        return any(exact_match(r, existing) for existing in self._roles)

    def has_category(self, category: int) -> bool:
        return any(role_category(existing) == category for existing in self._roles)

    def get_category_role(self, category: int) -> int:
        """Entry for ``category`` (category | subcategory), or 0."""
        for existing in self._roles:
            if role_category(existing) == category:
                return existing
        return 0

    def get_subcategory_role(self, subcategory: int) -> int:
        """First entry whose subcategory byte matches, or 0."""
        for existing in self._roles:
            if role_subcategory(existing) == (subcategory & 0xFF):
                return existing
        return 0

    def add_role(self, r: int) -> bool:
        if not role_is_valid(r):
            return False
        for i, existing in enumerate(self._roles):
            if role_category(existing) == role_category(r):
                merged = existing | role_functions(r)
                if merged == existing:
                    return False
                self._roles[i] = merged
                return True
        self._roles.append(r)
        return True

    def add_roles(self, roles: Iterable[int]) -> bool:
        modified = False
        for r in roles:
            modified = self.add_role(r) or modified
        return modified

    def remove_role(self, r: int) -> bool:
        """Clear ``r``'s function bits; drop the entry when none remain."""
        if not role_is_valid(r):
            return False
        for i, existing in enumerate(self._roles):
            if role_category(existing) != role_category(r):
                continue
            remaining = role_functions(existing) & ~role_functions(r)
            if remaining == role_functions(existing):
                return False
            if remaining == 0:
                del self._roles[i]
            else:
                self._roles[i] = role(role_category(existing), remaining)
            return True
        return False

    def remove_roles(self, roles: Iterable[int]) -> bool:
        modified = False
        for r in roles:
            modified = self.remove_role(r) or modified
        return modified

    def remove_category(self, category: int) -> bool:
        for i, existing in enumerate(self._roles):
            if role_category(existing) == category:
                del self._roles[i]
                return True
        return False

    def remove_exact_role(self, r: int) -> bool:
        if not role_is_valid(r):
            return False
        for i, existing in enumerate(self._roles):
            if exact_match(r, existing):
                del self._roles[i]
                return True
        return False

    def remove_all(self) -> bool:
        if not self._roles:
            return False
        self._roles = []
        return True

    @classmethod
    def from_csv(cls, csv: str | None) -> RoleSet:
        """Parse a decimal CSV list, silently discarding invalid tokens."""
        rs = cls()
        for token in (csv or "").split(","):
            token = token.strip()
            if not token:
                continue
            try:
                value = int(token, 10)
            except ValueError:
                continue
            if role_is_valid(value):
                rs._roles.append(value)
        return rs

    def to_csv(self) -> str:
        return ",".join(str(r) for r in self._roles)

    def is_roles_manager(self) -> bool:
        """READ|LIST on users and READ|UPDATE on roles."""
        return match_functions(
            FUNCTION_READ | FUNCTION_LIST, self.get_subcategory_role(SUBCATEGORY_USER)
        ) and match_functions(
            FUNCTION_READ | FUNCTION_UPDATE, self.get_subcategory_role(SUBCATEGORY_ROLES)
        )

    def is_invitation_manager(self) -> bool:
        """READ|LIST on users and READ|CREATE|DELETE on invitations."""
        return match_functions(
            FUNCTION_READ | FUNCTION_LIST, self.get_subcategory_role(SUBCATEGORY_USER)
        ) and match_functions(
            FUNCTION_READ | FUNCTION_CREATE | FUNCTION_DELETE,
            self.get_subcategory_role(SUBCATEGORY_INVITE),
        )


def all_roles(category: int) -> list[int]:
    """Every subcategory of ``category`` with all functions."""
    return [
        role(category | sub, FUNCTION_ALL)
        for sub in (
            SUBCATEGORY_CONF,
            SUBCATEGORY_USER,
            SUBCATEGORY_ROLES,
            SUBCATEGORY_INVITE,
            SUBCATEGORY_ORG,
            SUBCATEGORY_STORE,
            SUBCATEGORY_OBJECT,
            SUBCATEGORY_TEMPLATE,
        )
    ]


# Roles granted to the creator of a store
STORE_CREATOR_ROLES = [
    role(CATEGORY_STORE | SUBCATEGORY_CONF, FUNCTION_ALL),
    role(CATEGORY_STORE | SUBCATEGORY_USER, FUNCTION_ALL),
    role(CATEGORY_STORE | SUBCATEGORY_ROLES, FUNCTION_ALL),
    role(CATEGORY_STORE | SUBCATEGORY_INVITE, FUNCTION_ALL),
    role(CATEGORY_STORE | SUBCATEGORY_STORE, FUNCTION_ALL),
    role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_ALL),
]

# Roles granted to the creator of an organization
ORG_CREATOR_ROLES = [
    role(CATEGORY_ORG | SUBCATEGORY_CONF, FUNCTION_ALL),
    role(CATEGORY_ORG | SUBCATEGORY_USER, FUNCTION_ALL),
    role(CATEGORY_ORG | SUBCATEGORY_ROLES, FUNCTION_ALL),
    role(CATEGORY_ORG | SUBCATEGORY_INVITE, FUNCTION_ALL),
    role(CATEGORY_ORG | SUBCATEGORY_STORE, FUNCTION_ALL),
    role(CATEGORY_ORG | SUBCATEGORY_TEMPLATE, FUNCTION_ALL),
]
