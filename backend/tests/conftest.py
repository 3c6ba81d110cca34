import os
import sys
import pytest

# Ensure the backend root (containing the `quizlive` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from quizlive import create_app, db, feed, socketio
from quizlive.repository import Repository


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    ALLOWED_ORIGINS = ['http://localhost:3000']
    PUBLIC_BASE_URL = 'http://quiz.test'
    MAX_NICKNAME_LENGTH = 20
    QUESTION_BODY_MAX_LENGTH = 120
    CHOICE_BODY_MAX_LENGTH = 75
    MAX_ANSWERS_PER_QUESTION = 4
    DEFAULT_TIME_LIMIT_SEC = 30
    DEFAULT_QUIZ_NAME_LENGTH = 30
    STRICT_PHASE_TRANSITIONS = True
    IMPORT_SEQUENTIAL_ORDER = True
    FEED_SYNC_DELIVERY = True


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import quizlive.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def repo(flask_app):
    return Repository()


@pytest.fixture()
def change_feed(flask_app):
    return feed


@pytest.fixture()
def quiz_set(repo):
    qs = repo.create_quiz_set(name='Capitals', description='Geography')
    question = repo.create_question(qs.id, 'Capital of France?', order=0)
    repo.create_choice(question.id, 'Paris', is_correct=True)
    repo.create_choice(question.id, 'Lyon')
    return qs


@pytest.fixture()
def game(repo, quiz_set):
    return repo.create_game(quiz_set.id)


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def file_app(tmp_path):
    """App on a file-backed SQLite database, for tests that write from several threads."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'quizlive.db'}"

    application = create_app(FileConfig)
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _run_in_threads(app, *targets, timeout=10):
    """Run each target in its own thread and app context; return {name: result or exception}."""
    import threading

    outcome = {}

    def runner(name, fn):
        with app.app_context():
            try:
                outcome[name] = fn()
            except Exception as exc:
                outcome[name] = exc
            finally:
                db.session.remove()

    threads = [threading.Thread(target=runner, args=(name, fn), name=name) for name, fn in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout)
    return outcome


@pytest.fixture()
def run_in_threads(file_app):
    return lambda *targets, **kwargs: _run_in_threads(file_app, *targets, **kwargs)
