import os

import pytest

from harness import DockerClient, VerificationHarness, VerificationError, EXPECTED_IDENTITY, main
from mongodb24.utils.testing import CollectRunner, CollectSleep


class FakeDocker(object):
    """
    Answers the docker commands of the harness from a small in-memory model of running containers.
    """

    def __init__(self, config='', identity=EXPECTED_IDENTITY, reachable_after=1, logins=None, readable=None):
        self.config = config
        self.identity = identity
        self.reachable_after = reachable_after
        # Pairs of (database, user) that may log in.
        self.logins = {('test_db', 'user1')} if logins is None else logins
        # Pairs of (user, database) that may be read.
        self.readable = {('user1', 'test_db')} if readable is None else readable
        self.documents = []
        self.pings = 0
        self.removed = []

    def respond(self, args):
        command = args[1]
        if command == 'run' and args[2] == '-d':
            return 0, 'c0ffee\n'
        if command == 'inspect':
            return 0, '172.17.0.2\n'
        if command == 'exec':
            return (0, self.config) if args[3] == 'cat' else (0, self.identity + '\n')
        if command == 'logs':
            return 0, "INFO: The data directory '/var/lib/mongodb/data' is empty, creating users.\n"
        if command in ('stop', 'restart'):
            return 0, ''
        if command == 'rm':
            self.removed.append(args[-1])
            return 0, ''
        if command == 'run' and args[2] == '--rm':
            return self._mongo(args[4:])
        return 1, 'unknown command'

    def _mongo(self, args):
        user = args[args.index('-u') + 1] if '-u' in args else None
        database = args[-3].split('/')[-1]
        script = args[-1]
        if script == 'help':
            self.pings += 1
            return (0, '') if self.pings >= self.reachable_after else (1, 'connect failed')
        if (database, user) not in self.logins or args[args.index('-p') + 1].startswith('wrong'):
            return 252, 'auth fails'
        if 'getSiblingDB' in script:
            other = script.split('"')[1]
            if (user, other) not in self.readable:
                return 252, 'unauthorized'
            return 0, '{}\n'.format(len(self.documents))
        if '.insert(' in script:
            self.documents.append(script)
            return 0, ''
        if '.find(' in script:
            return (0, '{"name":"verify","value":42}\n') if self.documents else (0, '')
        return 0, database


def _harness(docker, attempts=3):
    runner = CollectRunner(fn_respond=docker.respond)
    harness = VerificationHarness('mongodb-24', docker=DockerClient(fn_run=runner), attempts=attempts, interval=1.,
                                  fn_sleep=CollectSleep())
    return harness, runner


def test_create_container_and_cleanup():
    docker = FakeDocker()
    harness, runner = _harness(docker)
    with harness:
        container = harness.create_container({'MONGODB_USER': 'user1', 'MONGODB_DATABASE': 'test_db'}, user=12345)
    assert container == 'c0ffee'
    command = runner.collect()[0]
    assert command[:3] == ['docker', 'run', '-d']
    assert command[command.index('-u') + 1] == '12345'
    assert ['-e', 'MONGODB_DATABASE=test_db', '-e', 'MONGODB_USER=user1'] == command[-5:-1]
    assert command[-1] == 'mongodb-24'
    assert docker.removed == ['c0ffee']


def test_wait_for_mongo_retries():
    docker = FakeDocker(reachable_after=3)
    harness, _ = _harness(docker, attempts=3)
    harness.wait_for_mongo('c0ffee', 'test_db', 'user1', 'pass1')
    assert docker.pings == 3


def test_wait_for_mongo_gives_up():
    docker = FakeDocker(reachable_after=10)
    harness, _ = _harness(docker, attempts=3)
    with pytest.raises(VerificationError) as e:
        harness.wait_for_mongo('c0ffee', 'test_db', 'user1', 'pass1')
    assert docker.pings == 3
    assert 'creating users' in str(e.value)


def test_mongo_command_targets_the_container():
    docker = FakeDocker()
    harness, runner = _harness(docker)
    harness.mongo('c0ffee', 'test_db', 'db.getName()', 'user1', 'pass1')
    assert runner.get_latest() == ['docker', 'run', '--rm', 'mongodb-24', 'mongo', '--quiet', '-u', 'user1', '-p', 'pass1',
                                   '172.17.0.2:27017/test_db', '--eval', 'db.getName()']


def test_assert_crud_and_access():
    harness, _ = _harness(FakeDocker())
    harness.assert_crud('c0ffee', 'test_db', 'user1', 'pass1')
    harness.assert_no_access('c0ffee', 'test_db', 'user1', 'pass1', 'other_db')
    with pytest.raises(VerificationError):
        harness.assert_no_access('c0ffee', 'test_db', 'user1', 'pass1', 'test_db')


def test_assert_login():
    harness, _ = _harness(FakeDocker())
    harness.assert_login('c0ffee', 'test_db', 'user1', 'pass1')
    harness.assert_login_refused('c0ffee', 'test_db', 'user1', 'wrong-password')
    harness.assert_login_refused('c0ffee', 'admin', 'admin', 'adminPass')
    with pytest.raises(VerificationError):
        harness.assert_login_refused('c0ffee', 'test_db', 'user1', 'pass1')


def test_assert_config():
    harness, _ = _harness(FakeDocker(config='# mongodb.conf\nport = 27017\nsmallfiles = true\n'))
    harness.assert_config('c0ffee', {'smallfiles': True, 'quiet': False, 'noprealloc': False})
    with pytest.raises(VerificationError):
        harness.assert_config('c0ffee', {'quiet': True})
    with pytest.raises(VerificationError):
        harness.assert_config('c0ffee', {'smallfiles': False})


def test_assert_identity():
    harness, _ = _harness(FakeDocker())
    harness.assert_identity('c0ffee')
    harness, _ = _harness(FakeDocker(identity='uid=1000(mongodb) gid=1000(mongodb) groups=1000(mongodb)'))
    with pytest.raises(VerificationError):
        harness.assert_identity('c0ffee')


def test_run_scenarios():
    docker = FakeDocker(logins={('test_db', 'user1'), ('admin', 'admin')},
                        readable={('user1', 'test_db'), ('admin', 'test_db')})
    harness, _ = _harness(docker)
    failures = harness.run(names=['admin', 'arbitrary user', 'restart'])
    assert failures == []
    assert len(docker.removed) == 3


def test_run_reports_failures():
    # Without an admin identity the admin scenario fails but the others still run.
    harness, _ = _harness(FakeDocker())
    failures = harness.run(names=['bootstrap', 'admin'])
    assert [name for name, _ in failures] == ['admin']


@pytest.mark.skipif(not os.environ.get('IMAGE_NAME'), reason='Set IMAGE_NAME to verify a built image.')
def test_image():
    assert main(['--image', os.environ['IMAGE_NAME']]) == 0
