"""
Pytest configuration and fixtures for matchmaker tests.
"""
import os
import sys
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from matchmaker.app import create_app
from matchmaker.models import db, Client


class ManualScheduler:
    """Collects scheduled tasks so tests decide when they run."""

    def __init__(self):
        self.app = None
        self.tasks = {}
        self.recurring = {}

    def init_app(self, app):
        self.app = app

    def schedule(self, key, delay, fn, *args):
        self.tasks[key] = (delay, fn, args)

    def every(self, key, interval, fn):
        self.recurring[key] = (interval, fn)

    def cancel(self, key):
        found = key in self.tasks or key in self.recurring
        self.tasks.pop(key, None)
        self.recurring.pop(key, None)
        return found

    def cancel_entity(self, entity_id):
        keys = [k for k in self.tasks if k[1] == entity_id]
        for key in keys:
            del self.tasks[key]
        return len(keys)

    def pending(self, key):
        return key in self.tasks

    def delay(self, key):
        return self.tasks[key][0]

    def stop(self):
        self.tasks.clear()
        self.recurring.clear()

    def run(self, key):
        """Run one pending task, as its timer would."""
        _, fn, args = self.tasks.pop(key)
        return fn(*args)

    def run_all(self):
        """Run every task pending right now (not the ones they schedule)."""
        for key in list(self.tasks):
            if key in self.tasks:
                self.run(key)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing', scheduler=ManualScheduler())

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing."""
    # Clear all tables before each test
    db.session.remove()

    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


@pytest.fixture
def scheduler(app):
    """Fresh manual scheduler wired into both orchestrators."""
    scheduler = ManualScheduler()
    scheduler.init_app(app)
    app.scheduler = scheduler
    app.lobbies.scheduler = scheduler
    app.matches.scheduler = scheduler
    app.supervisor.scheduler = scheduler
    return scheduler


@pytest.fixture
def notifier(app, mocker):
    """Mock notifier shared by both orchestrators."""
    notifier = mocker.MagicMock()
    notifier.pubsub = None
    app.notifier = notifier
    app.lobbies.notifier = notifier
    app.matches.notifier = notifier
    return notifier


@pytest.fixture
def fleet(app, mocker):
    """Mock Lighthouse client."""
    fleet = mocker.MagicMock()
    fleet.get_region_providers.return_value = ['provider-a', 'provider-b']
    fleet.create_server.return_value = {
        '_id': 'srv-1',
        'ip': '10.0.0.5',
        'port': 27015,
        'status': 'INIT',
        'data': {'hatchAddress': ':27019', 'hatchPassword': 'hatch'},
    }
    app.matches.fleet = fleet
    return fleet


@pytest.fixture
def probe(app, mocker):
    """Mock game server probe with a mock sidecar."""
    probe = mocker.MagicMock()
    probe.sidecar = mocker.MagicMock()
    probe.sidecar_for.return_value = probe.sidecar
    app.matches.probe = probe
    return probe


@pytest.fixture
def services(app, db_session, scheduler, notifier, fleet, probe):
    """Both orchestrators with every outside collaborator mocked."""
    return app.lobbies, app.matches


@pytest.fixture
def sample_client(db_session):
    """Create an integration client with access to tf2 in eu and na."""
    client = Client(
        client_id='c_test',
        name='Test Bot',
        access={'games': ['tf2'], 'limit': 5, 'regions': {'eu': {'limit': 3}, 'na': {}}},
    )
    client.set_secret('secret')
    db.session.add(client)
    db.session.commit()
    return client


@pytest.fixture
def auth_headers(sample_client):
    return {'Authorization': 'Bearer c_test:secret'}


@pytest.fixture
def lobby_options():
    """Factory for lobby creation options."""
    def make(user_id='creator-1', distribution='TEAM_ROLE_BASED', required_players=4,
             requirements=None, **overrides):
        options = {
            'user_id': user_id,
            'distribution': distribution,
            'callback_url': 'http://bot.test/lobby',
            'requirements': requirements if requirements is not None else [
                {'name': 'player', 'count': required_players, 'overfill': False},
            ],
            'match_options': {
                'game': 'tf2',
                'region': 'eu',
                'required_players': required_players,
            },
            'data': {},
        }
        options.update(overrides)
        return options
    return make


def make_player_data(n, roles=None, **extra):
    data = {
        'name': f'Player {n}',
        'discord': f'discord-{n}',
        'steam': f'steam-{n}',
        'roles': roles or ['player'],
    }
    data.update(extra)
    return data


@pytest.fixture
def player_data():
    return make_player_data
