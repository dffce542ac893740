"""
Logging of the per-object messages and configuration of the logging system.

The messages of a reconciliation carry a reference to the health check:
the text logs prefix the messages with its namespace and name,
the JSON logs put the whole reference into a separate field.
"""
import copy
import enum
import logging
from typing import Any, MutableMapping, Optional, Tuple, Union

import pythonjsonlogger.core
import pythonjsonlogger.json

from machinehealth.structs import bodies

DEFAULT_JSON_REFKEY = 'object'

_SEVERITIES = [
    (logging.DEBUG, 'debug'),
    (logging.INFO, 'info'),
    (logging.WARNING, 'warn'),
    (logging.ERROR, 'error'),
]


class LogFormat(enum.Enum):
    PLAIN = '%(message)s'
    FULL = '[%(asctime)s] %(name)-20.20s [%(levelname)-8.8s] %(message)s'
    JSON = enum.auto()


class ObjectFormatter(logging.Formatter):
    """ Prefix the per-object messages with ``[namespace/name]`` if requested. """
    prefixed: bool = False

    def format(self, record: logging.LogRecord) -> str:
        ref = getattr(record, 'k8s_ref', None)
        if self.prefixed and ref:
            namespace, name = ref.get('namespace'), ref.get('name')
            record = copy.copy(record)  # the other handlers must see the original
            record.msg = f"[{namespace}/{name}] {record.msg}" if namespace else f"[{name}] {record.msg}"
        return super().format(record)


class ObjectTextFormatter(ObjectFormatter):

    def __init__(self, fmt: Optional[str] = None, *, prefixed: bool = True) -> None:
        super().__init__(fmt)
        self.prefixed = prefixed


class ObjectJsonFormatter(ObjectFormatter, pythonjsonlogger.json.JsonFormatter):

    def __init__(self, *, refkey: Optional[str] = None, prefixed: bool = False) -> None:
        reserved = set(pythonjsonlogger.core.RESERVED_ATTRS) | {'k8s_ref'}
        super().__init__(reserved_attrs=reserved, timestamp=True)
        self.refkey = refkey or DEFAULT_JSON_REFKEY
        self.prefixed = prefixed

    def add_fields(
            self,
            log_record: MutableMapping[str, object],
            record: logging.LogRecord,
            message_dict: MutableMapping[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        ref = getattr(record, 'k8s_ref', None)
        if ref:
            log_record[self.refkey] = ref
        log_record.setdefault('severity', next(
            (severity for level, severity in _SEVERITIES if record.levelno <= level), 'fatal'))


class ObjectLogger(logging.LoggerAdapter):
    """
    A logger of one object's messages, e.g. of one reconciliation.

    The reference is built once, so the later changes of the body
    do not affect the messages.
    """

    def __init__(self, *, body: bodies.RawBody) -> None:
        super().__init__(logger, {'k8s_ref': bodies.build_object_reference(body)})

    def process(
            self,
            msg: str,
            kwargs: MutableMapping[str, Any],
    ) -> Tuple[str, MutableMapping[str, Any]]:
        # The message's own extras are kept along with the reference.
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


logger = logging.getLogger('machinehealth.objects')


def make_formatter(
        log_format: Union[LogFormat, str] = LogFormat.FULL,
        log_prefix: Optional[bool] = None,
        log_refkey: Optional[str] = None,
) -> ObjectFormatter:
    """
    Build a formatter for the CLI's options.

    The text logs are prefixed by default, the JSON logs are not:
    they have the reference in a separate field anyway.
    """
    if log_format is LogFormat.JSON:
        return ObjectJsonFormatter(refkey=log_refkey, prefixed=bool(log_prefix))
    if isinstance(log_format, LogFormat):
        return ObjectTextFormatter(log_format.value, prefixed=log_prefix is not False)
    if isinstance(log_format, str):
        return ObjectTextFormatter(log_format, prefixed=log_prefix is not False)
    raise ValueError(f"Unsupported log format: {log_format!r}")


def configure(
        debug: Optional[bool] = None,
        verbose: Optional[bool] = None,
        quiet: Optional[bool] = None,
        log_format: Union[LogFormat, str] = LogFormat.FULL,
        log_prefix: Optional[bool] = None,
        log_refkey: Optional[str] = None,
) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(make_formatter(log_format, log_prefix=log_prefix, log_refkey=log_refkey))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug or verbose else logging.WARNING if quiet else logging.INFO)

    # The event loop's internals are only interesting when debugging the operator itself.
    asyncio_logger = logging.getLogger('asyncio')
    asyncio_logger.propagate = bool(debug)
    if not debug:
        asyncio_logger.handlers[:] = [logging.NullHandler()]
