"""Command-line interface and configuration."""

import collections
import functools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, NamedTuple, Optional, TypeVar, Union

import click
import orjson as json
import uvloop
import yaml

import walletrpc

from . import log
from .remote import EndpointName
from .tools import client, monitor

__all__ = [
    'load_yaml',
    'cli',
]


class OptionGroupCommand(click.Command):
    @staticmethod
    def format_group(
        ctx: click.Context,
        formatter: click.HelpFormatter,
        header: str,
        params: list[click.Parameter],
    ) -> None:
        with formatter.section(header):
            options = []
            for param in params:
                record = param.get_help_record(ctx)
                if record is not None:  # pragma: no cover; does not occur currently
                    options.append(record)
            formatter.write_dl(options, col_max=30)

    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        grouped_params: dict['OptionGroup', list[click.Parameter]]
        grouped_params = collections.defaultdict(list)
        other_params: list[click.Parameter] = []
        for param in self.get_params(ctx):
            group = getattr(param, 'group', None)
            params = grouped_params[group] if group else other_params
            params.append(param)
        for group in sorted(grouped_params, key=lambda group: group.key):
            params = grouped_params[group]
            header = group.header or f'{group.key.title()} Options'
            self.format_group(ctx, formatter, header, params)
        self.format_group(ctx, formatter, 'Other Options', other_params)


class OptionGroupMultiCommand(OptionGroupCommand, click.Group):
    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        super().format_options(ctx, formatter)
        self.format_commands(ctx, formatter)


@dataclass
class OptionStore:
    options: dict[str, Any] = field(default_factory=dict)


class OptionGroup(NamedTuple):
    key: str
    header: Optional[str] = None


class Option(click.Option):
    def __init__(
        self,
        *args: Any,
        group: Optional[OptionGroup] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.group = group


FC = TypeVar('FC', Callable[..., Any], click.Command)
ParameterCallback = Callable[[click.Context, click.Parameter, Any], Any]


class OptionGroupFactory:
    def __init__(self) -> None:
        self.current: Optional[OptionGroup] = None

    def group(self, *args: Any, **kwargs: Any) -> Callable[[FC], FC]:
        self.current = OptionGroup(*args, **kwargs)
        return lambda func: func

    def option(self, *args: Any, **kwargs: Any) -> Callable[[FC], FC]:
        return click.option(*args, **kwargs, group=self.current)


@functools.lru_cache(maxsize=64)
def make_converter(convert: Callable[[Any], Any]) -> ParameterCallback:
    """Make a :mod:`click` callback that applies a conversion to each option value.

    Works with options provided multiple times (where ``multiple=True``).

    Arguments:
        convert: A unary conversion callable. The argument/return types are arbitrary
            and need not be the same.

    Returns:
        A :mod:`click`-compatible callback.
    """

    def callback(_ctx: click.Context, _param: click.Parameter, value: Any, /) -> Any:
        try:
            if isinstance(value, (tuple, list)):
                return tuple(convert(element) for element in value)
            return convert(value)
        except Exception as exc:
            raise click.BadParameter(str(exc)) from exc

    return callback


def check_positive(value: float) -> float:
    """Check whether the provided value is strictly positive.

    Examples:
        >>> check_positive(0.01)
        0.01
        >>> check_positive(0)
        Traceback (most recent call last):
          ...
        ValueError: '0' should be a positive number
    """
    if value <= 0:
        raise ValueError(f"'{value}' should be a positive number")
    return value


def parse_arguments(value: str) -> list[Any]:
    """Parse the positional arguments of a remote call.

    Examples:
        >>> parse_arguments('["hunter2", 1]')
        ['hunter2', 1]
        >>> parse_arguments('{"password": "hunter2"}')
        Traceback (most recent call last):
          ...
        ValueError: arguments should be a JSON array
    """
    arguments = json.loads(value)
    if not isinstance(arguments, list):
        raise ValueError('arguments should be a JSON array')
    return arguments


def load_yaml(path: Union[str, Path]) -> Any:
    """Read and parse a YAML file.

    Arguments:
        path: A path to a valid regular text file.

    Examples:
        >>> import tempfile
        >>> with tempfile.NamedTemporaryFile(mode='w') as tmp:
        ...     print('log-level: debug', file=tmp)
        ...     _ = tmp.seek(0)
        ...     load_yaml(tmp.name)
        {'log-level': 'debug'}
        >>> with tempfile.NamedTemporaryFile(mode='w') as tmp:
        ...     print(':', file=tmp)
        ...     _ = tmp.seek(0)
        ...     load_yaml(tmp.name)
        Traceback (most recent call last):
          ...
        ValueError: Unable to parse YAML (...): line 1, column 1
    """
    try:
        with Path(path).open() as stream:
            return yaml.load(stream, Loader=yaml.SafeLoader)
    except yaml.YAMLError as exc:
        message = f'Unable to parse YAML ({path})'
        mark = getattr(exc, 'problem_mark', None)
        if mark:  # pragma: no cover
            # The PyYAML docs recommend this pattern:
            # https://pyyaml.org/wiki/PyYAMLDocumentation
            message += f': line {mark.line + 1}, column {mark.column + 1}'
        raise ValueError(message) from exc


def _normalize_keys(config: Any) -> Any:
    if isinstance(config, dict):
        return {str(key).replace('-', '_'): _normalize_keys(value) for key, value in config.items()}
    return config


def load_config(ctx: click.Context, _param: click.Parameter, value: Optional[str]) -> None:
    """Use the mapping in a YAML file as option defaults.

    Keys may be spelled like the options (``log-level``) or like their parameter names
    (``log_level``). Options of a subcommand are nested under the subcommand's name.
    """
    if not value:
        return
    try:
        config = load_yaml(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    if config is None:
        return
    if not isinstance(config, dict):
        raise click.BadParameter('configuration should be a mapping')
    ctx.default_map = {**(ctx.default_map or {}), **_normalize_keys(config)}


optgroup = OptionGroupFactory()
click.option: Callable[[FC], FC] = functools.partial(  # type: ignore[misc]
    click.option,
    cls=Option,
)
ENDPOINT_NAMES = [name.value for name in EndpointName]


@click.group(
    context_settings=dict(
        auto_envvar_prefix='WALLETRPC',
        max_content_width=100,
        show_default=True,
    ),
    cls=OptionGroupMultiCommand,
)
@optgroup.group('hub')
@optgroup.option(
    '--hub-address',
    metavar='ADDRESS',
    multiple=True,
    default=['tcp://*:6100', 'ipc:///tmp/walletrpc-hub.sock'],
    help='Addresses the hub should bind to (peers connect to one of them).',
)
@optgroup.option(
    '--log-messages/--no-log-messages',
    default=False,
    help='Log every message endpoints send and receive, including payloads.',
)
@optgroup.group('log')
@optgroup.option(
    '--log-level',
    type=click.Choice(log.LEVELS, case_sensitive=False),
    default='info',
    help='Minimum severity of log records displayed.',
)
@optgroup.option(
    '--log-format',
    type=click.Choice(['json', 'pretty'], case_sensitive=False),
    default='json',
    help='Format of records printed to standard output.',
)
@optgroup.group('process')
@optgroup.option(
    '--thread-pool-workers',
    callback=make_converter(check_positive),
    type=int,
    default=1,
    help='Number of threads to spawn for executing blocking code.',
)
@optgroup.option(
    '--health-check-interval',
    callback=make_converter(check_positive),
    type=float,
    default=60,
    help='Seconds between health checks.',
)
@click.option(
    '--config',
    type=click.Path(dir_okay=False, exists=True),
    callback=load_config,
    is_eager=True,
    expose_value=False,
    help='YAML file of option defaults.',
)
@click.option('--debug/--no-debug', help='Enable the event loop debugger.')
@click.version_option(version=walletrpc.__version__, message='%(version)s')
@click.pass_context
def cli(ctx: click.Context, **options: Any) -> None:
    """Messaging backbone of a browser crypto-signing wallet.

    An injected page, a content-script relay, a background process, and any number of
    popups exchange request/reply messages over two broadcast primitives. This tool runs
    the hub that carries the runtime primitive between OS processes and issues or
    observes calls through it.
    """
    ctx.ensure_object(OptionStore).options.update(options)


@cli.command()
@click.pass_context
def hub(ctx: click.Context, **options: Any) -> None:
    """Start the runtime hub."""
    ctx.obj.options.update(options)
    uvloop.run(walletrpc.main(ctx))


@cli.command(name='call')
@click.option('--broadcast/--no-broadcast', help='Discard the result of the call.')
@click.option(
    '--arguments',
    callback=make_converter(parse_arguments),
    default='[]',
    help='Positional arguments (in JSON format).',
)
@click.option(
    '--source',
    type=click.Choice(ENDPOINT_NAMES),
    help='Name of the calling endpoint. Inferred from the method if not given.',
)
@click.option(
    '--destination',
    type=click.Choice(ENDPOINT_NAMES),
    help='Name of the called endpoint. Inferred from the method if not given.',
)
@click.option(
    '--timeout',
    callback=make_converter(check_positive),
    type=float,
    default=5,
    help='Seconds to wait for a reply.',
)
@click.argument('method')
@click.pass_context
def call_cli(ctx: click.Context, **options: Any) -> None:
    """Issue a remote call through the hub.

    The result is printed to standard output in JSON format:

    \b
        $ walletrpc call account.getActivePublicKeyHex
        $ walletrpc call account.unlock --arguments '["hunter2"]'
    """
    ctx.obj.options.update(options)
    uvloop.run(client.main(ctx))


@cli.command(name='monitor')
@click.pass_context
def monitor_cli(ctx: click.Context, **options: Any) -> None:
    """Log every message carried by the hub.

    The monitor attaches to the hub as its own context and declines every call, so it
    never changes the outcome of a call. Pass "--log-messages" to include payloads.
    """
    ctx.obj.options.update(options)
    uvloop.run(monitor.main(ctx))
