import json

import click
from flask import Flask
from flask_cors import CORS
from flask_socketio import SocketIO
from config import Config

socketio = SocketIO(async_mode=None)


def create_app(config_class=Config, clock=None, rng=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    origins = flask_app.config.get('CORS_ORIGINS') or '*'

    CORS(flask_app, origins=origins)
    socketio.init_app(flask_app, cors_allowed_origins=origins)

    from livequiz.services.games.engine import GameEngine
    from livequiz.socketio_events import SocketIOTransport, register_socketio_handlers

    engine = GameEngine(
        flask_app.config,
        SocketIOTransport(socketio),
        flask_app.logger,
        clock=clock,
        rng=rng,
    )
    flask_app.extensions['livequiz'] = engine

    from livequiz.main import main
    flask_app.register_blueprint(main)

    register_socketio_handlers(engine)

    # Timers are driven by hand in tests
    if not flask_app.config.get('TESTING'):
        engine.start(socketio)

    @click.command('check-quiz')
    @click.argument('path', type=click.Path(exists=True, dir_okay=False))
    def check_quiz_command(path):
        """Validates a quiz JSON file against the game schema."""
        from pydantic import ValidationError as SchemaError
        from livequiz.services.games.questions import Quiz

        with open(path, encoding='utf-8') as fh:
            try:
                quiz = Quiz.model_validate(json.load(fh))
            except (ValueError, SchemaError) as exc:
                raise click.ClickException(f'{path}: {exc}')
        click.echo(f'{quiz.title}: {len(quiz.questions)} questions, mode={quiz.settings.mode}')

    flask_app.cli.add_command(check_quiz_command)

    return flask_app
