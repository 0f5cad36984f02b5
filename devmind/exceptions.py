"""Custom exception hierarchy for devmind."""


class DevmindError(Exception):
    """Base for all devmind errors."""


class AgentNotFoundError(DevmindError):
    """No metrics or artifact exist for the given agent ID."""


class ArtifactNotFoundError(DevmindError):
    """The live source artifact of an agent does not exist."""


class BackupNotFoundError(DevmindError):
    """No backup exists to restore an agent's artifact from."""


class MutationError(DevmindError):
    """A suggestion could not be applied to source text."""


class PersistenceError(DevmindError):
    """Metrics, backups or reports could not be written or read."""


class EventPayloadError(DevmindError):
    """An event payload does not match the shape of its topic."""
