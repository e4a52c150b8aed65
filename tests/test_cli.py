import pytest
from click.testing import CliRunner

import walletrpc
from walletrpc import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def run(mocker):
    return mocker.patch('walletrpc.cli.uvloop.run')


@pytest.fixture
def main(mocker):
    return mocker.patch('walletrpc.main', new_callable=mocker.MagicMock)


def test_help(runner):
    result = runner.invoke(cli.cli, ['--help'])
    assert result.exit_code == 0
    for header in ('Hub Options', 'Log Options', 'Process Options', 'Other Options'):
        assert header in result.output
    assert 'monitor' in result.output


def test_version(runner):
    result = runner.invoke(cli.cli, ['--version'])
    assert result.exit_code == 0
    assert result.output.strip() == walletrpc.__version__


def test_hub_defaults(runner, run, main):
    result = runner.invoke(cli.cli, ['hub'])
    assert result.exit_code == 0, result.output
    run.assert_called_once_with(main.return_value)
    (ctx,) = main.call_args.args
    options = ctx.obj.options
    assert options['log_level'] == 'info'
    assert options['hub_address'] == ('tcp://*:6100', 'ipc:///tmp/walletrpc-hub.sock')
    assert options['thread_pool_workers'] == 1
    assert not options['log_messages']


def test_config_file(runner, run, main, tmp_path):
    config = tmp_path / 'walletrpc.yaml'
    config.write_text('log-level: debug\nhub_address: [ipc:///tmp/test.sock]\n')
    result = runner.invoke(cli.cli, ['--config', str(config), 'hub'])
    assert result.exit_code == 0, result.output
    (ctx,) = main.call_args.args
    assert ctx.obj.options['log_level'] == 'debug'
    assert ctx.obj.options['hub_address'] == ('ipc:///tmp/test.sock',)


def test_bad_config(runner, run, tmp_path):
    config = tmp_path / 'walletrpc.yaml'
    config.write_text('- log-level\n- debug\n')
    result = runner.invoke(cli.cli, ['--config', str(config), 'hub'])
    assert result.exit_code == 2
    assert 'configuration should be a mapping' in result.output
    run.assert_not_called()


def test_env_var(runner, run, main):
    result = runner.invoke(cli.cli, ['hub'], env={'WALLETRPC_LOG_FORMAT': 'pretty'})
    assert result.exit_code == 0, result.output
    (ctx,) = main.call_args.args
    assert ctx.obj.options['log_format'] == 'pretty'


def test_call_options(runner, run, mocker):
    client_main = mocker.patch('walletrpc.cli.client.main', new_callable=mocker.MagicMock)
    args = ['call', '--arguments', '["hunter2"]', '--timeout', '1', 'account.unlock']
    result = runner.invoke(cli.cli, args)
    assert result.exit_code == 0, result.output
    run.assert_called_once_with(client_main.return_value)
    (ctx,) = client_main.call_args.args
    options = ctx.obj.options
    assert options['method'] == 'account.unlock'
    assert options['arguments'] == ['hunter2']
    assert options['timeout'] == 1
    assert options['source'] is None and not options['broadcast']


@pytest.mark.parametrize('args', [
    ['call', '--arguments', '{"password": "hunter2"}', 'account.unlock'],
    ['call', '--arguments', 'not json', 'account.unlock'],
    ['call', '--timeout', '0', 'account.unlock'],
    ['call', '--source', 'content', 'account.unlock'],
    ['--thread-pool-workers', '0', 'hub'],
])
def test_bad_options(runner, run, args):
    result = runner.invoke(cli.cli, args)
    assert result.exit_code == 2
    run.assert_not_called()


def test_parse_arguments():
    assert cli.parse_arguments('[]') == []
    assert cli.parse_arguments('[1, {"a": null}]') == [1, {'a': None}]
    with pytest.raises(ValueError):
        cli.parse_arguments('"hunter2"')


def test_load_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('log-messages: true\nprocess:\n  thread-pool-workers: 2\n')
    assert cli.load_yaml(path) == {'log-messages': True, 'process': {'thread-pool-workers': 2}}
    path.write_text('key: [unclosed\n')
    with pytest.raises(ValueError, match='Unable to parse YAML'):
        cli.load_yaml(path)
