class PipelineError(Exception):
    """Base class for failures of one encrypt-and-replace invocation."""

    stage = "pipeline"


class ConfigurationError(PipelineError):
    stage = "config"


class EventError(PipelineError):
    """The notification did not describe an object."""

    stage = "event"


class SourceReadError(PipelineError):
    stage = "source"


class BodyTypeError(SourceReadError):
    """The storage backend returned no readable byte stream."""


class TransformError(PipelineError):
    stage = "transform"


class SinkWriteError(PipelineError):
    stage = "sink"


class DeleteError(PipelineError):
    stage = "delete"
