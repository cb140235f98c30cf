"""Fixed set of built-in system roles."""

from dataclasses import dataclass


@dataclass(frozen=True)
class SystemRoles:
    """
    Names of the three built-in, non-deletable roles.

    Role Hierarchy (highest to lowest):
    1. OWNER - Full control; granted only by first-owner election
    2. ADMIN - Elevated privileges, freely assignable
    3. USER - Standard access, default for new accounts

    Injected into services instead of comparing string literals, so the
    protection rules stay in one place.
    """

    owner: str = "Owner"
    admin: str = "Admin"
    user: str = "User"

    @property
    def names(self) -> tuple[str, str, str]:
        """System role names in seeding order"""
        return (self.owner, self.admin, self.user)

    def is_system_role(self, role_name: str) -> bool:
        """Check if a role name belongs to the system set."""
        return role_name in self.names

    def is_owner(self, role_name: str) -> bool:
        return role_name == self.owner

    def describe(self, role_name: str) -> str | None:
        """Seed description for a system role, None for custom roles"""
        descriptions = {
            self.owner: "System owner with full access",
            self.admin: "Administrator with elevated privileges",
            self.user: "Standard user with basic access",
        }
        return descriptions.get(role_name)
