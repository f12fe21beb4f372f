from livequiz import create_app, socketio
from livequiz.shutdown import GracefulShutdown

app = create_app()

if __name__ == '__main__':
    GracefulShutdown(
        app.extensions['livequiz'],
        app.logger,
        timeout_sec=app.config['SHUTDOWN_TIMEOUT_SEC'],
    ).install()
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, host=app.config['HOST'], port=app.config['PORT'])
