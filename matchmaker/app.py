import os
import json
import logging

import click
import redis
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError

from .config import config
from .models import db
from .errors import MatchmakerError
from .repositories import ClientRepository
from .scheduler import Scheduler
from .notifier import Notifier
from .fleet import LighthouseClient
from .probe import GameServerProbe
from .lobby_service import LobbyService
from .match_service import MatchService
from .supervisor import ExpirySupervisor
from shared.pubsub import PubSubClient

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, scheduler=None, fleet=None, probe=None, notifier=None) -> Flask:
    """Application factory for the matchmaker service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    db.init_app(app)

    with app.app_context():
        db.create_all()

    # Collaborators
    scheduler = scheduler or Scheduler()
    scheduler.init_app(app)

    if notifier is None:
        pubsub = PubSubClient(app.config['REDIS_URL']) if app.config['REDIS_URL'] else None
        notifier = Notifier(timeout=app.config['HTTP_TIMEOUT'], pubsub=pubsub)

    fleet = fleet or LighthouseClient(
        app.config['LIGHTHOUSE_HOST'],
        app.config['LIGHTHOUSE_CLIENT_SECRET'],
        app.config['PUBLIC_URL'],
        timeout=app.config['HTTP_TIMEOUT']
    )
    probe = probe or GameServerProbe(timeout=app.config['HTTP_TIMEOUT'])

    # The two orchestrators call each other, bind them once both exist
    lobbies = LobbyService(notifier=notifier, scheduler=scheduler)
    matches = MatchService(notifier=notifier, scheduler=scheduler, fleet=fleet, probe=probe)
    lobbies.bind_matches(matches)
    matches.bind_lobbies(lobbies)

    supervisor = ExpirySupervisor(lobbies, matches, scheduler)

    # Store services on app for access in routes
    app.scheduler = scheduler
    app.notifier = notifier
    app.lobbies = lobbies
    app.matches = matches
    app.supervisor = supervisor

    register_error_handlers(app)
    register_routes(app)
    register_commands(app)

    from .routes import lobbies as lobby_routes, matches as match_routes
    app.register_blueprint(lobby_routes.bp)
    app.register_blueprint(match_routes.bp)

    if app.config['MONITORING_ENABLED']:
        with app.app_context():
            supervisor.start()

    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(MatchmakerError)
    def handle_matchmaker_error(error):
        return jsonify(error.to_dict()), error.status_code


def register_routes(app: Flask):

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except SQLAlchemyError:
            db_ok = False

        redis_state = 'disabled'
        pubsub = app.notifier.pubsub
        if pubsub:
            try:
                pubsub.redis.ping()
                redis_state = 'connected'
            except redis.RedisError:
                redis_state = 'disconnected'

        healthy = db_ok and redis_state != 'disconnected'
        return jsonify({
            'status': 'healthy' if healthy else 'unhealthy',
            'database': 'connected' if db_ok else 'disconnected',
            'redis': redis_state,
            'monitoring': app.config['MONITORING_ENABLED'],
        }), 200 if healthy else 503


def register_commands(app: Flask):

    @app.cli.command('create-client')
    @click.argument('name')
    @click.option('--secret', prompt=True, hide_input=True, help='Client secret')
    @click.option('--game', 'games', multiple=True, required=True, help='Game the client may host')
    @click.option('--region', 'regions', multiple=True, required=True,
                  help='Region the client may use, optionally with a limit: eu or eu=4')
    @click.option('--limit', default=5, show_default=True, help='Active match limit')
    def create_client(name, secret, games, regions, limit):
        """Register an integration client."""
        access_regions = {}
        for region in regions:
            region_name, _, region_limit = region.partition('=')
            access_regions[region_name] = {'limit': int(region_limit)} if region_limit else {}

        client = ClientRepository().create(name, secret, games, access_regions, limit)
        click.echo(json.dumps(client.to_dict(), indent=2))
