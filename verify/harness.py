#!/usr/bin/env python3
"""
Black-box checks of the MongoDB image.
Containers are started through the docker client and inspected with the mongo shell of the image itself.
"""
import argparse
import logging
import sys
import time
import uuid

from bson import json_util

from mongodb24.utils import _run, configure_logging, tail, wait_until

logger = logging.getLogger(__name__)

MONGODB_PORT = 27017
CONFIG_PATH = '/var/lib/mongodb/mongodb.conf'
EXPECTED_IDENTITY = 'uid=184(mongodb) gid=998(mongodb) groups=998(mongodb)'
FLAG_VARIABLES = (('noprealloc', 'MONGODB_NOPREALLOC'), ('smallfiles', 'MONGODB_SMALLFILES'), ('quiet', 'MONGODB_QUIET'))
BOOTSTRAP_LOG_LINE = 'is empty, creating users'

DEFAULT_USER = 'user1'
DEFAULT_PASSWORD = 'pass1'
DEFAULT_DATABASE = 'test_db'
DEFAULT_ADMIN_PASSWORD = 'adminPass'


class VerificationError(AssertionError):
    pass


class DockerClient(object):
    def __init__(self, executable='docker', fn_run=_run):
        self._executable = executable
        self._fn_run = fn_run

    def _call(self, *args):
        result = self._fn_run([self._executable] + list(args))
        if result.returncode != 0:
            raise VerificationError("docker {} failed: {}".format(args[0], tail(result.stdout, max_lines=10)))
        return result.stdout.strip()

    def run(self, image, environment=None, user=None, name=None, args=None):
        _command = ['run', '-d']
        if name is not None:
            _command += ['--name', name]
        if user is not None:
            _command += ['-u', str(user)]
        for key in sorted((environment or {}).keys()):
            _command += ['-e', '{}={}'.format(key, environment[key])]
        return self._call(*(_command + [image] + list(args or [])))

    def ip_address(self, container):
        return self._call('inspect', '--format', '{{.NetworkSettings.IPAddress}}', container)

    def execute(self, container, *args):
        return self._call('exec', container, *args)

    def logs(self, container):
        return self._call('logs', container)

    def restart(self, container):
        return self._call('restart', container)

    def remove(self, container):
        self._fn_run([self._executable, 'stop', container])
        return self._fn_run([self._executable, 'rm', '-v', container]).returncode == 0

    def run_once(self, image, *args):
        """Run a throwaway container and return its exit code and output."""
        result = self._fn_run([self._executable, 'run', '--rm', image] + list(args))
        return result.returncode, result.stdout


class VerificationHarness(object):
    def __init__(self, image, docker=None, attempts=30, interval=2., fn_sleep=time.sleep):
        self._image = image
        self._docker = DockerClient() if docker is None else docker
        self._attempts = attempts
        self._interval = interval
        self._fn_sleep = fn_sleep
        self._containers = []

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.cleanup()

    def cleanup(self):
        while self._containers:
            container = self._containers.pop()
            self._docker.remove(container)
            logger.info("Removed container {}.".format(container))

    def create_container(self, environment, user=None):
        name = 'mongodb-verify-{}'.format(uuid.uuid4().hex[:12])
        container = self._docker.run(self._image, environment=environment, user=user, name=name)
        self._containers.append(container)
        logger.info("Started container {} as {}.".format(name, container))
        return container

    def mongo(self, container, database, script, user=None, password=None):
        _args = ['mongo', '--quiet']
        if user is not None:
            _args += ['-u', user, '-p', password]
        _args += ['{}:{}/{}'.format(self._docker.ip_address(container), MONGODB_PORT, database), '--eval', script]
        return self._docker.run_once(self._image, *_args)

    def wait_for_mongo(self, container, database, user, password):
        _ok = wait_until(lambda: self.mongo(container, database, 'help', user, password)[0] == 0,
                         self._attempts, self._interval, fn_sleep=self._fn_sleep)
        if _ok < 0:
            raise VerificationError("Container {} did not accept connections:\n{}".format(
                container, tail(self._docker.logs(container))))

    def assert_login(self, container, database, user, password):
        code, output = self.mongo(container, database, 'db.getName()', user, password)
        if code != 0:
            raise VerificationError("User '{}' could not log in to '{}': {}".format(user, database, tail(output)))

    def assert_login_refused(self, container, database, user, password):
        code, _ = self.mongo(container, database, 'db.getName()', user, password)
        if code == 0:
            raise VerificationError("User '{}' unexpectedly logged in to '{}'.".format(user, database))

    def insert(self, container, database, user, password, collection, document):
        script = 'db.{}.insert({}); var err = db.getLastError(); if (err) {{ print(err); quit(1); }}'.format(
            collection, json_util.dumps(document))
        code, output = self.mongo(container, database, script, user, password)
        if code != 0:
            raise VerificationError("Insert into {}.{} failed: {}".format(database, collection, tail(output)))

    def find(self, container, database, user, password, collection):
        script = 'db.{}.find({{}}, {{_id: 0}}).forEach(function (d) {{ print(JSON.stringify(d)); }})'.format(collection)
        code, output = self.mongo(container, database, script, user, password)
        if code != 0:
            raise VerificationError("Query on {}.{} failed: {}".format(database, collection, tail(output)))
        return [json_util.loads(line) for line in output.splitlines() if line.startswith('{')]

    def assert_crud(self, container, database, user, password, collection='testData'):
        document = {'name': 'verify', 'value': 42}
        self.insert(container, database, user, password, collection, document)
        if document not in self.find(container, database, user, password, collection):
            raise VerificationError("The inserted document was not found in {}.{}.".format(database, collection))

    def assert_no_access(self, container, database, user, password, other_database):
        script = 'db.getSiblingDB({}).testData.findOne()'.format(json_util.dumps(other_database))
        code, _ = self.mongo(container, database, script, user, password)
        if code == 0:
            raise VerificationError("User '{}' can read database '{}'.".format(user, other_database))

    def read_config(self, container):
        return self._docker.execute(container, 'cat', CONFIG_PATH)

    def assert_config(self, container, expected):
        """
        :param expected: Maps a setting to True when the 'setting = true' line must be present, False when absent.
        """
        lines = [line.strip() for line in self.read_config(container).splitlines()]
        for setting, present in expected.items():
            _line = '{} = true'.format(setting)
            if present != (_line in lines):
                raise VerificationError("Expected '{}' to be {} in the configuration.".format(
                    _line, 'present' if present else 'absent'))

    def assert_identity(self, container):
        identity = self._docker.execute(container, 'id', 'mongodb')
        if identity != EXPECTED_IDENTITY:
            raise VerificationError("The mongodb account changed: '{}'.".format(identity))

    def _environment(self, **extra):
        environment = {'MONGODB_USER': DEFAULT_USER, 'MONGODB_PASSWORD': DEFAULT_PASSWORD, 'MONGODB_DATABASE': DEFAULT_DATABASE}
        environment.update(extra)
        return environment

    def _ready_container(self, user=None, **extra):
        container = self.create_container(self._environment(**extra), user=user)
        self.wait_for_mongo(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD)
        return container

    def verify_bootstrap(self):
        container = self._ready_container()
        self.assert_login(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD)
        self.assert_login_refused(container, DEFAULT_DATABASE, DEFAULT_USER, 'wrong-password')
        self.assert_crud(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD)
        self.assert_no_access(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD, 'other_db')
        self.assert_login_refused(container, 'admin', 'admin', DEFAULT_ADMIN_PASSWORD)

    def verify_admin(self):
        container = self._ready_container(MONGODB_ADMIN_PASSWORD=DEFAULT_ADMIN_PASSWORD)
        self.assert_login(container, 'admin', 'admin', DEFAULT_ADMIN_PASSWORD)
        self.assert_crud(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD)
        # The admin reads what the application user wrote.
        code, output = self.mongo(container, 'admin', 'db.getSiblingDB({}).testData.count()'.format(
            json_util.dumps(DEFAULT_DATABASE)), 'admin', DEFAULT_ADMIN_PASSWORD)
        if code != 0 or output.strip() != '1':
            raise VerificationError("The admin could not read the application database: {}".format(tail(output)))

    def verify_config(self):
        for setting, variable in FLAG_VARIABLES:
            container = self._ready_container(**{variable: 'true'})
            _expected = dict((s, s == setting) for s, _ in FLAG_VARIABLES)
            self.assert_config(container, _expected)
        container = self._ready_container()
        self.assert_config(container, dict((s, False) for s, _ in FLAG_VARIABLES))

    def verify_arbitrary_user(self):
        container = self._ready_container(user=12345)
        self.assert_identity(container)
        self.assert_crud(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD)

    def verify_restart(self):
        container = self._ready_container()
        self.assert_crud(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD, collection='beforeRestart')
        self._docker.restart(container)
        self.wait_for_mongo(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD)
        if not self.find(container, DEFAULT_DATABASE, DEFAULT_USER, DEFAULT_PASSWORD, 'beforeRestart'):
            raise VerificationError("The documents written before the restart are gone.")
        _bootstraps = self._docker.logs(container).count(BOOTSTRAP_LOG_LINE)
        if _bootstraps != 1:
            raise VerificationError("The users were created {} times.".format(_bootstraps))

    def scenarios(self):
        return [
            ('bootstrap', self.verify_bootstrap),
            ('admin', self.verify_admin),
            ('config', self.verify_config),
            ('arbitrary user', self.verify_arbitrary_user),
            ('restart', self.verify_restart)
        ]

    def run(self, names=None):
        failures = []
        for name, fn_scenario in self.scenarios():
            if names and name not in names:
                continue
            logger.info("Running scenario '{}'.".format(name))
            try:
                fn_scenario()
                logger.info("Scenario '{}' passed.".format(name))
            except VerificationError as e:
                logger.error("Scenario '{}' failed: {}".format(name, e))
                failures.append((name, e))
            finally:
                self.cleanup()
        return failures


def main(argv=None):
    parser = argparse.ArgumentParser(description='Verify the MongoDB image.')
    parser.add_argument('--image', type=str, required=True, help='The image to verify.')
    parser.add_argument('--attempts', type=int, default=30, help='Connection attempts per container.')
    parser.add_argument('--interval', type=float, default=2., help='Seconds between connection attempts.')
    parser.add_argument('--scenario', action='append', help='Run only the named scenario(s).')
    args = parser.parse_args(argv)

    with VerificationHarness(args.image, attempts=args.attempts, interval=args.interval) as harness:
        failures = harness.run(names=args.scenario)
    if failures:
        logger.error("{} scenario(s) failed: {}.".format(len(failures), ', '.join(name for name, _ in failures)))
        return 1
    logger.info("All scenarios passed.")
    return 0


if __name__ == "__main__":
    configure_logging()
    sys.exit(main())
