import logging
import os
import signal

import pytest
from bson import json_util

from app import BootstrapSequencer, BOOTSTRAP_MARKER, IllegalStateError, detect_state
from app import STATE_UNINITIALIZED, STATE_INITIALIZED, STATE_BOOTSTRAPPING, STATE_USER_PROVISIONED, STATE_RUNNING, STATE_FAILED
import core
from core import ConfigRenderer, ConfigurationError, EnvironmentConfiguration, StartupOptions, is_usage_error, scrub_environment
from engine import MongoShell, MongodProcess, EngineError, ProvisioningError, ReadinessError, add_user_script
from mongodb24.utils import wait_until
from mongodb24.utils.option import PropertyError, str_to_bool
from mongodb24.utils.testing import CollectRunner, CollectPopen, CollectSleep
from wrap import main

_ENVIRON = {'MONGODB_USER': 'user1', 'MONGODB_PASSWORD': 'pass1', 'MONGODB_DATABASE': 'test_db'}


def _environ(**kwargs):
    environ = dict(_ENVIRON)
    environ.update(kwargs)
    return environ


def _configuration(**kwargs):
    return EnvironmentConfiguration.from_environ(_environ(**kwargs))


def _evals(runner):
    # The scripts sent through the shell, without the pings.
    return [args[-1] for args in runner.collect() if args[-1] != 'help']


class Setup(object):
    def __init__(self, tmpdir, configuration=None, fn_respond=None, attempts=5, environ=None, fn_popen=None,
                 **popen_kwargs):
        directory = str(tmpdir.realpath())
        self.data_dir = os.path.join(directory, 'data')
        self.config_path = os.path.join(directory, 'mongodb.conf')
        self.journal = []
        self.runner = CollectRunner(fn_respond=fn_respond, journal=self.journal)
        self.popen = CollectPopen(journal=self.journal, **popen_kwargs)
        self.sleep = CollectSleep()
        self.sequencer = BootstrapSequencer(_configuration() if configuration is None else configuration,
                                            renderer=ConfigRenderer(data_dir=self.data_dir),
                                            options=StartupOptions(attempts=attempts, interval=0.5, stop_timeout=1.),
                                            config_path=self.config_path,
                                            environ=_environ(PATH='/usr/bin') if environ is None else environ,
                                            fn_popen=self.popen if fn_popen is None else fn_popen,
                                            shell=MongoShell(fn_run=self.runner),
                                            fn_sleep=self.sleep)

    def populate(self):
        os.makedirs(self.data_dir)
        with open(os.path.join(self.data_dir, 'test_db.0'), 'w') as f:
            f.write('x')


def test_str_to_bool():
    assert all(str_to_bool(v) for v in ('true', 'TRUE', 'yes', 'on', '1', ' True '))
    assert not any(str_to_bool(v) for v in ('false', 'False', 'no', 'off', '0'))
    with pytest.raises(ValueError):
        str_to_bool('maybe')


def test_configuration_from_environ():
    configuration = _configuration(MONGODB_SMALLFILES='true', MONGODB_QUIET='false')
    assert configuration.user == 'user1'
    assert configuration.password == 'pass1'
    assert configuration.database == 'test_db'
    assert not configuration.is_admin_requested()
    assert configuration.noprealloc is None
    assert configuration.smallfiles is True
    assert configuration.quiet is False
    assert _configuration(MONGODB_ADMIN_PASSWORD='secret').is_admin_requested()
    # Empty values count as unset.
    assert not _configuration(MONGODB_ADMIN_PASSWORD='').is_admin_requested()


def test_configuration_hides_passwords():
    configuration = _configuration(MONGODB_ADMIN_PASSWORD='adminSecret')
    assert 'pass1' not in repr(configuration)
    assert 'adminSecret' not in str(configuration)


def test_configuration_reports_all_errors():
    with pytest.raises(ConfigurationError) as e:
        EnvironmentConfiguration.from_environ({'MONGODB_USER': 'bad user', 'MONGODB_DATABASE': 'a.b',
                                               'MONGODB_NOPREALLOC': 'maybe', 'MONGODB_QUIET': 'yes'})
    keys = sorted(error.key for error in e.value.errors)
    assert keys == ['MONGODB_DATABASE', 'MONGODB_NOPREALLOC', 'MONGODB_PASSWORD', 'MONGODB_USER']
    assert 'maybe' in str(e.value)


def test_startup_options():
    options = StartupOptions.from_environ({})
    assert options == StartupOptions(attempts=60, interval=1., stop_timeout=60.)
    options = StartupOptions.from_environ({'MONGODB_START_ATTEMPTS': '5', 'MONGODB_START_INTERVAL': '0.25'})
    assert options.attempts == 5 and options.interval == 0.25
    assert options.replace(attempts=None, stop_timeout=3.).stop_timeout == 3.
    with pytest.raises(ConfigurationError):
        StartupOptions.from_environ({'MONGODB_START_ATTEMPTS': '0'})
    with pytest.raises(ConfigurationError):
        StartupOptions.from_environ({'MONGODB_STOP_TIMEOUT': 'soon'})


def test_render_flags():
    renderer = ConfigRenderer(data_dir='/data')
    text = renderer.render(_configuration())
    assert 'dbpath = /data' in text.splitlines()
    assert 'port = 27017' in text.splitlines()
    for setting in ('noprealloc', 'smallfiles', 'quiet'):
        assert setting not in text
        variable = 'MONGODB_{}'.format(setting.upper())
        assert '{} = true'.format(setting) in renderer.render(_configuration(**{variable: 'true'})).splitlines()
        assert setting not in renderer.render(_configuration(**{variable: 'false'}))


def test_render_is_deterministic():
    renderer = ConfigRenderer()
    configuration = _configuration(MONGODB_QUIET='true', MONGODB_NOPREALLOC='true', MONGODB_SMALLFILES='true')
    keys = [key for key, _ in renderer.settings(configuration)]
    assert keys == ['port', 'dbpath', 'pidfilepath', 'nohttpinterface', 'noprealloc', 'smallfiles', 'quiet']
    assert renderer.render(configuration) == renderer.render(configuration)


def test_write_config_file(tmpdir):
    path = os.path.join(str(tmpdir.realpath()), 'mongodb.conf')
    renderer = ConfigRenderer()
    renderer.write(_configuration(MONGODB_SMALLFILES='true'), path=path)
    renderer.write(_configuration(), path=path)
    with open(path) as f:
        assert 'smallfiles' not in f.read()
    assert os.listdir(str(tmpdir.realpath())) == ['mongodb.conf']


def test_write_config_file_leaves_no_temporary_file(tmpdir, monkeypatch):
    def _replace(src, dst):
        raise RuntimeError("interrupted")

    monkeypatch.setattr(core.os, 'replace', _replace)
    with pytest.raises(RuntimeError):
        ConfigRenderer().write(_configuration(), path=os.path.join(str(tmpdir.realpath()), 'mongodb.conf'))
    assert os.listdir(str(tmpdir.realpath())) == []


def test_usage_error_only_for_missing_variables():
    assert not is_usage_error([PropertyError('MONGODB_USER', "'missing user' may only contain letters")])
    assert not is_usage_error([PropertyError('MONGODB_QUIET', 'x', missing=True)])
    assert is_usage_error([PropertyError('MONGODB_USER', 'x', missing=True)])


def test_scrub_environment():
    environ = scrub_environment(_environ(MONGODB_ADMIN_PASSWORD='secret', MONGODB_QUIET='true', PATH='/usr/bin'))
    assert environ == {'MONGODB_QUIET': 'true', 'PATH': '/usr/bin'}


def test_add_user_script_escapes_values():
    script = add_user_script('test_db', 'user1', 'pa"ss\'word', ['readWrite'])
    assert json_util.dumps({'user': 'user1', 'pwd': 'pa"ss\'word', 'roles': ['readWrite']}) in script
    assert 'db.getSiblingDB("test_db")' in script
    assert 'quit(1)' in script


def test_shell_command():
    shell = MongoShell(port=27018)
    assert shell.command('admin', 'help') == ['mongo', '--quiet', '127.0.0.1:27018/admin', '--eval', 'help']
    assert shell.command('db', 'x', user='u', password='p')[2:6] == ['-u', 'u', '-p', 'p']


def test_wait_until():
    sleep = CollectSleep()
    calls = []
    assert wait_until(lambda: calls.append(1) or len(calls) == 3, 5, 0.1, fn_sleep=sleep) == 3
    assert sleep.collect() == [0.1, 0.1]
    sleep = CollectSleep()
    assert wait_until(lambda: False, 4, 2., fn_sleep=sleep) == -1
    assert sleep.collect() == [2., 2., 2.]
    assert wait_until(lambda: True, 4, 2., fn_abort=lambda: True) == -1


def test_detect_state(tmpdir):
    directory = str(tmpdir.realpath())
    assert detect_state(os.path.join(directory, 'missing')) == STATE_UNINITIALIZED
    assert detect_state(directory) == STATE_UNINITIALIZED
    with open(os.path.join(directory, 'local.0'), 'w') as f:
        f.write('x')
    assert detect_state(directory) == STATE_INITIALIZED
    with open(os.path.join(directory, BOOTSTRAP_MARKER), 'w'):
        pass
    with pytest.raises(ConfigurationError):
        detect_state(directory)


def test_bootstrap_without_admin(tmpdir):
    setup = Setup(tmpdir)
    engine = setup.sequencer.start()
    assert setup.sequencer.get_state() == STATE_RUNNING
    assert setup.sequencer.get_history() == [STATE_UNINITIALIZED, STATE_BOOTSTRAPPING, STATE_USER_PROVISIONED, STATE_RUNNING]
    temporary, final = setup.popen.collect()
    assert temporary.args == ['mongod', '-f', setup.config_path, '--bind_ip', '127.0.0.1']
    assert final.args == ['mongod', '-f', setup.config_path, '--auth']
    assert engine.get_args() == final.args
    # The temporary engine is stopped with a signal, not killed.
    assert temporary.signals == [15]
    scripts = _evals(setup.runner)
    assert len(scripts) == 1
    assert '"user": "user1"' in scripts[0] and '"readWrite"' in scripts[0]
    assert 'getSiblingDB("test_db")' in scripts[0]
    assert os.listdir(setup.data_dir) == []
    assert os.path.exists(setup.config_path)


def test_bootstrap_with_admin(tmpdir):
    setup = Setup(tmpdir, configuration=_configuration(MONGODB_ADMIN_PASSWORD='adminPass'))
    setup.sequencer.start()
    admin, application = _evals(setup.runner)
    assert 'getSiblingDB("admin")' in admin
    assert '"user": "admin"' in admin and '"pwd": "adminPass"' in admin
    assert 'userAdminAnyDatabase' in admin
    assert '"user": "user1"' in application


def test_temporary_engine_stops_before_final_start(tmpdir):
    setup = Setup(tmpdir)
    setup.sequencer.start()
    events = [(kind, args[-1]) for kind, args in setup.journal if kind in ('start', 'terminate', 'exit')]
    assert events == [('start', '127.0.0.1'), ('terminate', '127.0.0.1'), ('exit', '127.0.0.1'), ('start', '--auth')]


def test_skip_bootstrap_on_populated_data_dir(tmpdir):
    setup = Setup(tmpdir, configuration=_configuration(MONGODB_ADMIN_PASSWORD='adminPass'))
    setup.populate()
    setup.sequencer.start()
    assert setup.sequencer.get_history() == [STATE_INITIALIZED, STATE_RUNNING]
    assert setup.runner.collect() == []
    assert len(setup.popen.collect()) == 1
    assert '--auth' in setup.popen.get_latest().args


def test_restart_does_not_provision_again(tmpdir):
    setup = Setup(tmpdir)
    setup.sequencer.start()
    # The engine writes its files during the first run.
    with open(os.path.join(setup.data_dir, 'test_db.ns'), 'w') as f:
        f.write('x')
    second = Setup(tmpdir)
    second.sequencer.start()
    assert second.runner.collect() == []
    assert second.sequencer.get_history()[0] == STATE_INITIALIZED


def test_final_engine_environment_has_no_credentials(tmpdir):
    setup = Setup(tmpdir, environ=_environ(MONGODB_ADMIN_PASSWORD='secret', PATH='/usr/bin'))
    setup.sequencer.start()
    for process in setup.popen.collect():
        assert process.env == {'PATH': '/usr/bin'}


def test_readiness_gives_up(tmpdir, caplog):
    setup = Setup(tmpdir, fn_respond=lambda args: (1, 'connect failed'), attempts=4)
    with open(os.path.join(str(tmpdir.realpath()), 'mongod-bootstrap.log'), 'w') as f:
        f.write('journal dir=/var/lib/mongodb/data/journal\nexception in initAndListen\n')
    with caplog.at_level(logging.ERROR):
        with pytest.raises(ReadinessError):
            setup.sequencer.start()
    assert len(setup.runner.collect()) == 4
    assert setup.sleep.collect() == [0.5, 0.5, 0.5]
    assert setup.sequencer.get_state() == STATE_FAILED
    # Only the temporary engine ran and it was stopped.
    assert len(setup.popen.collect()) == 1
    assert setup.popen.get_latest().returncode is not None
    assert 'exception in initAndListen' in caplog.text


def test_readiness_engine_exits_early(tmpdir):
    setup = Setup(tmpdir, crash=100)
    with pytest.raises(ReadinessError) as e:
        setup.sequencer.start()
    assert 'code 100' in str(e.value)
    assert setup.runner.collect() == []


def test_provisioning_failure_is_fatal(tmpdir):
    def _respond(args):
        return (0, '') if args[-1] == 'help' or '"admin"' in args[-1] else (1, 'addUser failed: not master')

    setup = Setup(tmpdir, configuration=_configuration(MONGODB_ADMIN_PASSWORD='adminPass'), fn_respond=_respond)
    with pytest.raises(ProvisioningError):
        setup.sequencer.start()
    assert setup.sequencer.get_history() == [STATE_UNINITIALIZED, STATE_BOOTSTRAPPING, STATE_FAILED]
    assert len(setup.popen.collect()) == 1
    # The half done bootstrap is refused on the next start.
    assert os.path.exists(os.path.join(setup.data_dir, BOOTSTRAP_MARKER))
    with pytest.raises(ConfigurationError):
        Setup(tmpdir).sequencer.start()


def test_temporary_engine_not_stopping_is_fatal(tmpdir):
    setup = Setup(tmpdir, hang=True)
    with pytest.raises(EngineError):
        setup.sequencer.start()
    assert len(setup.popen.collect()) == 1
    assert setup.sequencer.get_state() == STATE_FAILED


def test_temporary_engine_failed_exit_is_fatal(tmpdir):
    setup = Setup(tmpdir, exit_code=12)
    with pytest.raises(EngineError):
        setup.sequencer.start()
    assert len(setup.popen.collect()) == 1


def test_illegal_transition(tmpdir):
    setup = Setup(tmpdir)
    setup.populate()
    setup.sequencer.start()
    with pytest.raises(IllegalStateError):
        setup.sequencer.bootstrap()


def test_quit_forwards_the_signal(tmpdir):
    setup = Setup(tmpdir)
    setup.populate()
    setup.sequencer.start()
    setup.sequencer.quit()
    assert setup.popen.get_latest().signals == [15]
    assert setup.sequencer.get_engine().get_returncode() == 0


def test_signal_while_the_final_engine_is_created(tmpdir):
    holder = []

    def _popen(args, **kwargs):
        # Delivered while the sequencer holds its lock.
        os.kill(os.getpid(), signal.SIGTERM)
        return holder[0].popen(args, **kwargs)

    setup = Setup(tmpdir, fn_popen=_popen)
    holder.append(setup)
    setup.populate()
    _previous = signal.signal(signal.SIGTERM, lambda sig, frame: setup.sequencer.quit(sig))
    try:
        engine = setup.sequencer.start()
    finally:
        signal.signal(signal.SIGTERM, _previous)
    assert engine is setup.sequencer.get_engine()
    assert setup.popen.get_latest().signals == [15]
    assert not engine.is_running()


def test_quit_while_bootstrapping(tmpdir):
    holder = []

    def _respond(args):
        holder[0].sequencer.quit()
        return 1, ''

    setup = Setup(tmpdir, fn_respond=_respond)
    holder.append(setup)
    with pytest.raises(ReadinessError) as e:
        setup.sequencer.start()
    assert 'Shutdown requested' in str(e.value)
    # Polling stops at the next attempt instead of using up the budget.
    assert len(setup.runner.collect()) == 1
    assert setup.sleep.collect() == [0.5]
    assert len(setup.popen.collect()) == 1
    assert setup.popen.get_latest().signals == [15]
    assert setup.sequencer.get_history() == [STATE_UNINITIALIZED, STATE_BOOTSTRAPPING, STATE_FAILED]


def _missing_binary(args, **kwargs):
    raise FileNotFoundError(2, 'No such file or directory', args[0])


def test_missing_engine_binary(tmpdir):
    setup = Setup(tmpdir, fn_popen=_missing_binary)
    with pytest.raises(EngineError) as e:
        setup.sequencer.start()
    assert 'mongod' in str(e.value)
    assert setup.sequencer.get_state() == STATE_FAILED
    assert os.path.exists(os.path.join(setup.data_dir, BOOTSTRAP_MARKER))


def test_main_missing_engine_binary(tmpdir):
    directory = str(tmpdir.realpath())
    argv = ['--config', os.path.join(directory, 'mongodb.conf'), '--data', os.path.join(directory, 'data')]
    assert main(argv, environ=_environ(), fn_popen=_missing_binary, shell=MongoShell(fn_run=CollectRunner())) == 1


def test_engine_process_start_twice():
    popen = CollectPopen()
    engine = MongodProcess(['mongod'], fn_popen=popen).start()
    assert engine.is_running()
    with pytest.raises(EngineError):
        engine.start()
    assert engine.stop(timeout=1.) == 0
    assert not engine.is_running()


def test_main_runs_the_server(tmpdir):
    directory = str(tmpdir.realpath())
    popen = CollectPopen()
    runner = CollectRunner()
    argv = ['--config', os.path.join(directory, 'mongodb.conf'), '--data', os.path.join(directory, 'data'),
            '--attempts', '3', 'mongod', '--oplogSize', '64']
    assert main(argv, environ=_environ(), fn_popen=popen, shell=MongoShell(fn_run=runner)) == 0
    assert popen.get_latest().args[-3:] == ['--auth', '--oplogSize', '64']


def test_main_configuration_error(tmpdir, caplog):
    with caplog.at_level(logging.ERROR):
        assert main([], environ={'MONGODB_USER': 'user1'}) == 1
    assert 'MONGODB_PASSWORD' in caplog.text
    assert 'You must specify' in caplog.text


def test_main_bootstrap_error(tmpdir):
    directory = str(tmpdir.realpath())
    argv = ['--config', os.path.join(directory, 'mongodb.conf'), '--data', os.path.join(directory, 'data'),
            '--attempts', '2', '--interval', '0.01']
    runner = CollectRunner(fn_respond=lambda args: (1, ''))
    assert main(argv, environ=_environ(), fn_popen=CollectPopen(), shell=MongoShell(fn_run=runner)) == 1


@pytest.mark.parametrize('option, value', [('--attempts', '0'), ('--interval', '-1'), ('--stop-timeout', '0')])
def test_main_rejects_invalid_timing_options(tmpdir, option, value):
    directory = str(tmpdir.realpath())
    popen = CollectPopen()
    argv = ['--config', os.path.join(directory, 'mongodb.conf'), '--data', os.path.join(directory, 'data'), option, value]
    with pytest.raises(SystemExit) as e:
        main(argv, environ=_environ(), fn_popen=popen, shell=MongoShell(fn_run=CollectRunner()))
    assert e.value.code == 2
    assert popen.collect() == []


def test_main_passes_other_commands_through():
    calls = []
    main(['bash', '-c', 'ls'], environ={}, fn_exec=lambda *args: calls.append(args))
    assert calls == [('bash', ['bash', '-c', 'ls'])]
