"""
Permission algebra — effective bitmask from role assignments and channel
overrides.

Evaluation order, least to most authoritative:
  1. server-wide: OR of every role the member holds (the @everyone role,
     whose id is the server id, is always held)
  2. @everyone channel override
  3. role channel overrides, allow/deny each OR-combined across all of the
     member's roles (not applied in role-rank order)
  4. member channel override

Deny is applied before allow inside every tier. ADMINISTRATOR anywhere in
the server-wide mask short-circuits to every permission.

Bit positions are stored in role rows server-side — never renumber them.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from chisme_client.schemas.role import ChannelOverride, Member, OverrideTarget, Role


class Permissions(enum.IntFlag):
    NONE = 0
    # ── General ──
    VIEW_CHANNELS = 1 << 0
    MANAGE_CHANNELS = 1 << 1
    MANAGE_ROLES = 1 << 2
    MANAGE_EMOJIS = 1 << 3
    VIEW_AUDIT_LOG = 1 << 4
    MANAGE_SERVER = 1 << 5
    CREATE_INVITE = 1 << 6
    KICK_MEMBERS = 1 << 7
    BAN_MEMBERS = 1 << 8
    # ── Text ──
    SEND_MESSAGES = 1 << 9
    SEND_FILES = 1 << 10
    EMBED_LINKS = 1 << 11
    ADD_REACTIONS = 1 << 12
    USE_EMOJIS = 1 << 13
    MANAGE_MESSAGES = 1 << 14
    READ_HISTORY = 1 << 15
    MENTION_EVERYONE = 1 << 16
    # ── Voice ──
    CONNECT = 1 << 17
    SPEAK = 1 << 18
    VIDEO = 1 << 19
    MUTE_MEMBERS = 1 << 20
    DEAFEN_MEMBERS = 1 << 21
    MOVE_MEMBERS = 1 << 22
    USE_VOICE_ACTIVITY = 1 << 23
    PRIORITY_SPEAKER = 1 << 24
    MODERATE_MEMBERS = 1 << 25
    # ── Advanced ──
    ADMINISTRATOR = 1 << 30

    @classmethod
    def all(cls) -> Permissions:
        value = cls.NONE
        for member in cls:
            value |= member
        return value


# Lost when the channel can't be seen, whatever the overrides say
VIEW_GATED = Permissions.SEND_MESSAGES | Permissions.CONNECT | Permissions.READ_HISTORY


@dataclass(frozen=True)
class PermissionDef:
    flag: Permissions
    label: str
    description: str
    category: str  # general | text | voice | advanced


PERMISSION_DEFS: tuple[PermissionDef, ...] = (
    PermissionDef(Permissions.VIEW_CHANNELS, "View Channels", "View text and voice channels", "general"),
    PermissionDef(Permissions.MANAGE_CHANNELS, "Manage Channels", "Create, edit, and delete channels", "general"),
    PermissionDef(Permissions.MANAGE_ROLES, "Manage Roles", "Create, edit, and assign roles", "general"),
    PermissionDef(Permissions.MANAGE_EMOJIS, "Manage Emojis", "Upload and delete custom emojis", "general"),
    PermissionDef(Permissions.VIEW_AUDIT_LOG, "View Audit Log", "View the server audit log", "general"),
    PermissionDef(Permissions.MANAGE_SERVER, "Manage Server", "Change server name, description, and settings", "general"),
    PermissionDef(Permissions.CREATE_INVITE, "Create Invite", "Create invite links to the server", "general"),
    PermissionDef(Permissions.KICK_MEMBERS, "Kick Members", "Remove members from the server", "general"),
    PermissionDef(Permissions.BAN_MEMBERS, "Ban Members", "Permanently ban members from the server", "general"),
    PermissionDef(Permissions.SEND_MESSAGES, "Send Messages", "Send messages in text channels", "text"),
    PermissionDef(Permissions.SEND_FILES, "Send Files", "Upload files and images", "text"),
    PermissionDef(Permissions.EMBED_LINKS, "Embed Links", "Links show embedded previews", "text"),
    PermissionDef(Permissions.ADD_REACTIONS, "Add Reactions", "Add reactions to messages", "text"),
    PermissionDef(Permissions.USE_EMOJIS, "Use Emojis", "Use custom emojis in messages", "text"),
    PermissionDef(Permissions.MANAGE_MESSAGES, "Manage Messages", "Delete or pin messages from other users", "text"),
    PermissionDef(Permissions.READ_HISTORY, "Read History", "View message history", "text"),
    PermissionDef(Permissions.MENTION_EVERYONE, "Mention Everyone", "Use @everyone and @here mentions", "text"),
    PermissionDef(Permissions.CONNECT, "Connect", "Join voice channels", "voice"),
    PermissionDef(Permissions.SPEAK, "Speak", "Speak in voice channels", "voice"),
    PermissionDef(Permissions.VIDEO, "Video", "Share video in voice channels", "voice"),
    PermissionDef(Permissions.MUTE_MEMBERS, "Mute Members", "Server-mute other members", "voice"),
    PermissionDef(Permissions.DEAFEN_MEMBERS, "Deafen Members", "Server-deafen other members", "voice"),
    PermissionDef(Permissions.MOVE_MEMBERS, "Move Members", "Move members between voice channels", "voice"),
    PermissionDef(Permissions.USE_VOICE_ACTIVITY, "Voice Activity", "Use voice activity detection instead of PTT", "voice"),
    PermissionDef(Permissions.PRIORITY_SPEAKER, "Priority Speaker", "Others' volume is lowered when you speak", "voice"),
    PermissionDef(Permissions.MODERATE_MEMBERS, "Timeout Members", "Temporarily stop members from chatting", "voice"),
    PermissionDef(Permissions.ADMINISTRATOR, "Administrator", "Full access — bypasses all permission checks", "advanced"),
)

PRESET_MEMBER = (
    Permissions.VIEW_CHANNELS
    | Permissions.CREATE_INVITE
    | Permissions.SEND_MESSAGES
    | Permissions.SEND_FILES
    | Permissions.EMBED_LINKS
    | Permissions.ADD_REACTIONS
    | Permissions.USE_EMOJIS
    | Permissions.READ_HISTORY
    | Permissions.CONNECT
    | Permissions.SPEAK
    | Permissions.VIDEO
    | Permissions.USE_VOICE_ACTIVITY
)

PRESET_MODERATOR = (
    PRESET_MEMBER
    | Permissions.MANAGE_CHANNELS
    | Permissions.KICK_MEMBERS
    | Permissions.MANAGE_MESSAGES
    | Permissions.MUTE_MEMBERS
    | Permissions.MODERATE_MEMBERS
)

PRESET_ADMIN = Permissions.ADMINISTRATOR


def permission_labels(bits: int) -> list[str]:
    """Human-readable labels for every capability set in ``bits``."""
    return [d.label for d in PERMISSION_DEFS if bits & d.flag]


def has_permission(bits: int, required: Permissions) -> bool:
    if bits & Permissions.ADMINISTRATOR:
        return True
    return (bits & required) == required and required != Permissions.NONE


def _granted(override: ChannelOverride) -> int:
    # a bit both allowed and denied by one override is denied
    return override.allow & ~override.deny


def _apply(perms: Permissions, allow: int, deny: int) -> Permissions:
    return Permissions((perms & ~deny) | allow)


def base_permissions(member: Member, roles: Mapping[str, Role]) -> Permissions:
    permissions = Permissions.NONE
    for role_id in member.all_role_ids():
        role = roles.get(role_id)
        if role is None:
            # dangling reference contributes nothing
            continue
        permissions |= Permissions(role.permissions) & Permissions.all()
    return permissions


def effective_permissions(
    member: Member,
    roles: Mapping[str, Role],
    channel_overrides: Iterable[ChannelOverride] | None = None,
) -> Permissions:
    permissions = base_permissions(member, roles)

    if permissions & Permissions.ADMINISTRATOR:
        return Permissions.all()

    if channel_overrides is None:
        return permissions

    everyone = None
    own = None
    role_allow = 0
    role_deny = 0
    held = set(member.role_ids)
    for override in channel_overrides:
        if override.target_type is OverrideTarget.MEMBER:
            if override.target_id == member.user_id:
                own = override
        elif override.target_id == member.server_id:
            everyone = override
        elif override.target_id in held:
            role_allow |= _granted(override)
            role_deny |= override.deny

    if everyone is not None:
        permissions = _apply(permissions, _granted(everyone), everyone.deny)

    permissions = _apply(permissions, role_allow, role_deny)

    if own is not None:
        permissions = _apply(permissions, _granted(own), own.deny)

    if not permissions & Permissions.VIEW_CHANNELS:
        permissions &= ~VIEW_GATED

    return Permissions(permissions)


class PermissionSnapshot:
    """Locally known roles, own membership and per-channel overrides.

    Read-mostly reference data: replaced wholesale on refresh, never
    authoritative — the server re-validates every action.
    """

    def __init__(self, member: Member, roles: Iterable[Role] = ()) -> None:
        self.member = member
        self.roles: dict[str, Role] = {r.id: r for r in roles}
        # channel_id -> {(target_type, target_id): ChannelOverride}
        self._overrides: dict[str, dict[tuple[OverrideTarget, str], ChannelOverride]] = {}

    def set_roles(self, roles: Iterable[Role]) -> None:
        self.roles = {r.id: r for r in roles}

    def set_member_roles(self, role_ids: Iterable[str]) -> None:
        self.member = self.member.model_copy(update={"role_ids": set(role_ids)})

    def set_channel_overrides(self, channel_id: str, overrides: Iterable[ChannelOverride]) -> None:
        table: dict[tuple[OverrideTarget, str], ChannelOverride] = {}
        for override in overrides:
            # last one wins: at most one override per (channel, target)
            table[(override.target_type, override.target_id)] = override
        self._overrides[channel_id] = table

    def set_override(self, override: ChannelOverride) -> None:
        table = self._overrides.setdefault(override.channel_id, {})
        table[(override.target_type, override.target_id)] = override

    def remove_override(self, channel_id: str, target_type: OverrideTarget, target_id: str) -> None:
        self._overrides.get(channel_id, {}).pop((target_type, target_id), None)

    def overrides_for(self, channel_id: str) -> list[ChannelOverride]:
        return list(self._overrides.get(channel_id, {}).values())

    def has_overrides_for(self, channel_id: str) -> bool:
        return channel_id in self._overrides

    def server_wide(self) -> Permissions:
        return effective_permissions(self.member, self.roles)

    def for_channel(self, channel_id: str | None) -> Permissions:
        if channel_id is None:
            return self.server_wide()
        return effective_permissions(self.member, self.roles, self.overrides_for(channel_id))

    def check(self, required: Permissions, channel_id: str | None = None) -> bool:
        return has_permission(self.for_channel(channel_id), required)

    def display_role(self) -> Role | None:
        """Highest-positioned held role with a colour, for name rendering."""
        held = [self.roles[r] for r in self.member.all_role_ids() if r in self.roles]
        coloured = [r for r in held if r.color]
        if not coloured:
            return None
        return max(coloured, key=lambda r: r.position)
