from .exceptions import ResultError as ResultError
from .kv import KVLoader as KVLoader
from .options import LoaderOptions as LoaderOptions
from .results import Err as Err
from .results import LoaderError as LoaderError
from .results import NotFound as NotFound
from .results import Ok as Ok
from .results import Result as Result
from .results import UnknownBatch as UnknownBatch
from .results import is_unresolved as is_unresolved
from .runners import AsyncioTaskRunner as AsyncioTaskRunner
from .runners import BatchOutcome as BatchOutcome
from .runners import SerialTaskRunner as SerialTaskRunner
from .runners import TaskRunner as TaskRunner
from .runners import ThreadPoolTaskRunner as ThreadPoolTaskRunner
from .source import BaseSource as BaseSource

__all__ = [
    "KVLoader",
    "LoaderOptions",
    "BaseSource",
    "Ok",
    "Err",
    "Result",
    "NotFound",
    "UnknownBatch",
    "LoaderError",
    "ResultError",
    "is_unresolved",
    "BatchOutcome",
    "TaskRunner",
    "SerialTaskRunner",
    "ThreadPoolTaskRunner",
    "AsyncioTaskRunner",
]
