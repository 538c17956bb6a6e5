import unittest

from flask_jwt_extended import create_access_token
from sqlalchemy import func, select

from models import Post, db
from tests.helpers import ApiTestCase


class PostApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.alice_id, self.alice_token = self.register('alice')
        self.bob_id, self.bob_token = self.register('bob')

    def count_posts(self):
        with self.app.app_context():
            return db.session.scalar(select(func.count(Post.id)))

    def test_create_post(self):
        post = self.create_post(self.alice_token, title='Trip', content='Went to #Paris and #paris again #food', tag='travel')
        self.assertEqual(post['author_id'], self.alice_id)
        self.assertEqual(post['author']['username'], 'alice')
        self.assertEqual(post['tag'], 'travel')
        self.assertEqual(post['likes'], [])
        self.assertEqual(post['hashtags'], ['paris', 'food'])
        self.assertEqual(self.get_user(self.alice_id)['posts_count'], 1)

    def test_create_post_validates_fields(self):
        response = self.client.post('/api/posts', json={'title': '  ', 'content': ''},
                                    headers=self.auth(self.alice_token))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(set(response.get_json()['errors']), {'title', 'content'})
        self.assertEqual(self.count_posts(), 0)

    def test_create_post_requires_token(self):
        response = self.client.post('/api/posts', json={'title': 'x', 'content': 'y'})
        self.assertEqual(response.status_code, 401)

    def test_create_post_for_missing_author_inserts_nothing(self):
        with self.app.app_context():
            token = create_access_token(identity='999')
        response = self.client.post('/api/posts', json={'title': 'Ghost', 'content': 'boo'},
                                    headers=self.auth(token))
        self.assertEqual(response.status_code, 400)
        self.assertIn('does not exist', response.get_json()['error'])
        self.assertEqual(self.count_posts(), 0)

    def test_list_posts_newest_first_with_filters(self):
        self.create_post(self.alice_token, title='One', tag='news')
        self.create_post(self.bob_token, title='Two')
        self.create_post(self.alice_token, title='Three', tag='news')

        response = self.client.get('/api/posts')
        self.assertEqual(response.status_code, 200)
        self.assertEqual([p['title'] for p in response.get_json()], ['Three', 'Two', 'One'])
        self.assertEqual(response.headers['X-Total-Count'], '3')

        tagged = self.client.get('/api/posts', query_string={'tag': 'news'}).get_json()
        self.assertEqual([p['title'] for p in tagged], ['Three', 'One'])

        by_bob = self.client.get('/api/posts', query_string={'author': self.bob_id}).get_json()
        self.assertEqual([p['title'] for p in by_bob], ['Two'])

        paged = self.client.get('/api/posts', query_string={'page': 2, 'limit': 2})
        self.assertEqual([p['title'] for p in paged.get_json()], ['One'])
        self.assertEqual(paged.headers['X-Total-Count'], '3')

    def test_list_posts_rejects_bad_pagination(self):
        response = self.client.get('/api/posts', query_string={'limit': 0})
        self.assertEqual(response.status_code, 400)
        self.assertIn('limit', response.get_json()['errors'])

    def test_get_post_includes_comments(self):
        post = self.create_post(self.alice_token)
        self.client.post(f"/api/posts/{post['id']}/comments", json={'content': 'Nice'},
                         headers=self.auth(self.bob_token))
        response = self.client.get(f"/api/posts/{post['id']}")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload['comments_count'], 1)
        self.assertEqual(payload['comments'][0]['content'], 'Nice')
        self.assertEqual(payload['comments'][0]['author']['username'], 'bob')

    def test_get_missing_post_is_404(self):
        response = self.client.get('/api/posts/12345')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()['error'], 'Post not found')

    def test_author_can_update_post(self):
        post = self.create_post(self.alice_token, title='Old', content='Body')
        response = self.client.put(f"/api/posts/{post['id']}", json={'title': 'New #fresh'},
                                   headers=self.auth(self.alice_token))
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload['title'], 'New #fresh')
        self.assertEqual(payload['content'], 'Body')
        self.assertEqual(payload['hashtags'], ['fresh'])

    def test_non_author_cannot_update_post(self):
        post = self.create_post(self.alice_token, title='Mine', content='Original')
        response = self.client.put(f"/api/posts/{post['id']}", json={'title': 'Hijacked'},
                                   headers=self.auth(self.bob_token))
        self.assertEqual(response.status_code, 403)
        unchanged = self.client.get(f"/api/posts/{post['id']}").get_json()
        self.assertEqual(unchanged['title'], 'Mine')
        self.assertEqual(unchanged['content'], 'Original')

    def test_non_author_cannot_delete_post(self):
        post = self.create_post(self.alice_token)
        response = self.client.delete(f"/api/posts/{post['id']}", headers=self.auth(self.bob_token))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get(f"/api/posts/{post['id']}").status_code, 200)
        self.assertEqual(self.count_posts(), 1)

    def test_author_can_delete_post(self):
        post = self.create_post(self.alice_token)
        self.client.put(f"/api/posts/{post['id']}/like", headers=self.auth(self.bob_token))
        self.client.post(f"/api/posts/{post['id']}/comments", json={'content': 'hi'},
                         headers=self.auth(self.bob_token))

        response = self.client.delete(f"/api/posts/{post['id']}", headers=self.auth(self.alice_token))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get(f"/api/posts/{post['id']}").status_code, 404)
        self.assertEqual(self.get_user(self.alice_id)['posts_count'], 0)

    def test_toggle_like_twice_restores_likes(self):
        post = self.create_post(self.alice_token)
        url = f"/api/posts/{post['id']}/like"

        liked = self.client.put(url, headers=self.auth(self.bob_token)).get_json()
        self.assertTrue(liked['isLiked'])
        self.assertEqual(liked['likes'], [self.bob_id])
        self.assertEqual(liked['likes_count'], 1)

        unliked = self.client.put(url, headers=self.auth(self.bob_token)).get_json()
        self.assertFalse(unliked['isLiked'])
        self.assertEqual(unliked['likes'], post['likes'])

    def test_like_missing_post_is_404(self):
        response = self.client.put('/api/posts/999/like', headers=self.auth(self.bob_token))
        self.assertEqual(response.status_code, 404)

    def test_is_liked_reflects_viewer(self):
        post = self.create_post(self.alice_token)
        self.client.put(f"/api/posts/{post['id']}/like", headers=self.auth(self.bob_token))

        as_bob = self.client.get(f"/api/posts/{post['id']}", headers=self.auth(self.bob_token)).get_json()
        as_alice = self.client.get(f"/api/posts/{post['id']}", headers=self.auth(self.alice_token)).get_json()
        anonymous = self.client.get(f"/api/posts/{post['id']}").get_json()
        self.assertTrue(as_bob['isLiked'])
        self.assertFalse(as_alice['isLiked'])
        self.assertNotIn('isLiked', anonymous)

    def test_add_comment_requires_content(self):
        post = self.create_post(self.alice_token)
        response = self.client.post(f"/api/posts/{post['id']}/comments", json={'content': '   '},
                                    headers=self.auth(self.bob_token))
        self.assertEqual(response.status_code, 400)
        self.assertIn('content', response.get_json()['errors'])

    def test_posts_by_hashtag_and_popular_hashtags(self):
        self.create_post(self.alice_token, title='A', content='#python rocks')
        self.create_post(self.bob_token, title='B', content='#Python and #flask')
        self.create_post(self.bob_token, title='C', content='no tags')

        tagged = self.client.get('/api/posts/hashtag/python').get_json()
        self.assertEqual([p['title'] for p in tagged], ['B', 'A'])

        popular = self.client.get('/api/hashtags').get_json()
        self.assertEqual([(h['name'], h['posts_count']) for h in popular], [('python', 2), ('flask', 1)])


if __name__ == "__main__":
    unittest.main()
