"""
Knowledge Graph Errors

Exception taxonomy shared by the expansion engine, the job manager and the
embedding cache. Memory-pressure stops are not exceptions; they surface as the
``partially_completed`` job status.
"""


class ExpansionError(Exception):
    """Base class for every error raised by the knowledge_graph package"""


class ValidationError(ExpansionError, ValueError):
    """Bad options, unknown provider id or unknown context reference"""


class NotFoundError(ExpansionError, KeyError):
    """Unknown expansion job id"""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class JobStateError(ExpansionError):
    """The job is not in a state that carries a result"""


class ProviderError(ExpansionError):
    """A generation provider call raised"""

    def __init__(self, message: str, provider_id: str = None):
        super().__init__(message)
        self.provider_id = provider_id


class JobTimeoutError(ExpansionError, TimeoutError):
    """Waiting for a job timed out; the job itself keeps running"""


class CacheFormatError(ExpansionError):
    """Malformed or incompatible embedding cache snapshot"""
