import enum


class CollaboratorRole(str, enum.Enum):
    editor = "editor"
    viewer = "viewer"


class AccessLevel(str, enum.Enum):
    none = "none"
    viewer = "viewer"
    editor = "editor"
    owner = "owner"

    @property
    def rank(self) -> int:
        return _ACCESS_RANK[self]

    def allows(self, required: "AccessLevel") -> bool:
        return self.rank >= required.rank

    @property
    def can_edit(self) -> bool:
        return self.allows(AccessLevel.editor)


_ACCESS_RANK = {
    AccessLevel.none: 0,
    AccessLevel.viewer: 1,
    AccessLevel.editor: 2,
    AccessLevel.owner: 3,
}


class VersionSource(str, enum.Enum):
    manual = "manual"
    autosave = "autosave"
    restore = "restore"
