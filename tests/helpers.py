import shutil
import tempfile
import unittest

from app import create_app
from models import db


class ApiTestCase(unittest.TestCase):
    """Spins up an app over an in-memory SQLite database for each test."""

    test_config = {}

    def setUp(self):
        self.upload_dir = tempfile.mkdtemp()
        self.app = create_app('testing', {'UPLOAD_FOLDER': self.upload_dir, **self.test_config})
        with self.app.app_context():
            db.create_all()
        self.client = self.app.test_client()

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
        shutil.rmtree(self.upload_dir, ignore_errors=True)

    def auth(self, token):
        return {'Authorization': f'Bearer {token}'}

    def register(self, username='alice', email=None, password='secret123'):
        response = self.client.post('/api/auth/register', json={
            'username': username,
            'email': email or f'{username}@example.com',
            'password': password,
        })
        self.assertEqual(response.status_code, 201, response.get_json())
        payload = response.get_json()
        return payload['user']['id'], payload['token']

    def create_post(self, token, title='Hello', content='First post', **extra):
        response = self.client.post(
            '/api/posts',
            json={'title': title, 'content': content, **extra},
            headers=self.auth(token),
        )
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()

    def get_user(self, user_id):
        response = self.client.get(f'/api/users/{user_id}')
        self.assertEqual(response.status_code, 200)
        return response.get_json()
