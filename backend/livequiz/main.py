from flask import Blueprint, current_app, jsonify

main = Blueprint('main', __name__)


def _engine():
    return current_app.extensions['livequiz']


@main.route('/')
def index():
    return jsonify({'service': 'livequiz', 'status': 'ok'})


@main.route('/health')
def health():
    engine = _engine()
    stats = engine.stats()
    status = 'draining' if engine.draining else 'ok'
    return jsonify({'status': status, **stats}), (503 if engine.draining else 200)


@main.route('/api/games')
def list_games():
    return jsonify(_engine().games_summary())
