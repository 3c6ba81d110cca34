from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

from quizlive.realtime.feed import ChangeFeed  # noqa: E402  (feed imports models, which need db)

feed = ChangeFeed()


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('ALLOWED_ORIGINS') or []

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)
    feed.init_app(flask_app, start_task=socketio.start_background_task)

    from quizlive.main import main
    flask_app.register_blueprint(main)

    from quizlive.api.quiz_sets import quiz_sets
    flask_app.register_blueprint(quiz_sets, url_prefix='/api/quiz-sets')

    from quizlive.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api/games')

    from quizlive.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from quizlive.errors import QuizLiveError

    @flask_app.errorhandler(QuizLiveError)
    def handle_quizlive_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database with the CSV template quiz."""
        from quizlive.services.importer import CSV_TEMPLATE, import_quiz, parse_csv
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            report = import_quiz(parse_csv(CSV_TEMPLATE), name='Sample Quiz')
            print(f'Database has been reset and seeded with quiz set {report.quiz_set.id}!')

    @click.command('import-csv')
    @click.argument('path', type=click.Path(exists=True, dir_okay=False))
    @click.option('--name', default=None, help='Quiz set name (defaults to the first question).')
    def import_csv_command(path, name):
        """Imports a quiz set from a CSV file."""
        from quizlive.services.importer import import_quiz, parse_csv
        with open(path, encoding='utf-8-sig') as fh:
            rows = parse_csv(fh.read())
        with flask_app.app_context():
            report = import_quiz(rows, name=name)
        if report.quiz_set is None:
            print('Nothing imported.')
            return
        print(f'Imported quiz set {report.quiz_set.id}: '
              f'{report.questions_created} questions, {report.choices_created} choices')
        for failure in report.errors:
            print(f'  row {failure.row}: {failure.step} failed: {failure.message}')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(import_csv_command)

    return flask_app
