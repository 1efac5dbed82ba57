class PipekitError(Exception):
    pass


class ParseError(PipekitError):
    def __init__(self, message: str, *, raw: object = None, position: int | None = None) -> None:
        super().__init__(message)
        self.raw = raw
        self.position = position


class ConfigError(PipekitError):
    pass


class InvalidSortKey(ConfigError):
    pass


class RecordError(PipekitError):
    def __init__(self, message: str, *, record: object = None, stage: str | None = None) -> None:
        super().__init__(message)
        self.record = record
        self.stage = stage


class PipelineIOError(PipekitError):
    pass


class SourceError(PipelineIOError):
    pass


class SinkError(PipelineIOError):
    pass


class RunCancelled(PipekitError):
    pass
