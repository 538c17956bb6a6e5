# Routes for handling requests

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import create_access_token, get_jwt_identity, jwt_required

from errors import ValidationError
from forms import (
    comment_form,
    login_form,
    pagination_args,
    post_form,
    profile_form,
    register_form,
)


def _iso(value):
    return value.isoformat() if value else None


def user_summary(user):
    return {"id": user.id, "username": user.username, "avatar": user.avatar}


def user_json(user, private=False, is_following=None):
    data = {
        "id": user.id,
        "username": user.username,
        "bio": user.bio,
        "avatar": user.avatar,
        "role": user.role,
        "status": user.status,
        "followers_count": user.followers_count,
        "following_count": user.following_count,
        "posts_count": user.posts_count,
        "music": music_json(user),
        "video": video_json(user),
        "created_at": _iso(user.created_at),
        "updated_at": _iso(user.updated_at),
    }
    if private:
        data["email"] = user.email
    if is_following is not None:
        data["isFollowing"] = is_following
    return data


def music_json(user):
    if not user.music_url:
        return None
    return {"title": user.music_title, "artist": user.music_artist, "url": user.music_url}


def video_json(user):
    if not user.video_url:
        return None
    return {"title": user.video_title, "url": user.video_url}


def comment_json(comment):
    return {
        "id": comment.id,
        "content": comment.content,
        "author_id": comment.author_id,
        "post_id": comment.post_id,
        "author": user_summary(comment.author) if comment.author else None,
        "created_at": _iso(comment.created_at),
        "updated_at": _iso(comment.updated_at),
    }


def post_json(post, viewer_id=None, with_comments=False):
    likes = [like.user_id for like in post.likes]
    data = {
        "id": post.id,
        "title": post.title,
        "content": post.content,
        "tag": post.tag,
        "author_id": post.author_id,
        "author": user_summary(post.author) if post.author else None,
        "created_at": _iso(post.created_at),
        "updated_at": _iso(post.updated_at),
        "likes": likes,
        "likes_count": len(likes),
        "comments_count": len(post.comments),
        "hashtags": [hashtag.name for hashtag in post.hashtags],
    }
    if viewer_id is not None:
        data["isLiked"] = viewer_id in likes
    if with_comments:
        data["comments"] = [comment_json(comment) for comment in post.comments]
    return data


def _json_body():
    if not request.is_json:
        raise ValidationError('Content-Type must be application/json')
    return request.get_json(silent=True)


def _caller_id(services):
    caller_id = int(get_jwt_identity())
    services.users.ensure_active_id(caller_id)
    return caller_id


def _optional_caller_id():
    identity = get_jwt_identity()
    return int(identity) if identity is not None else None


def _page_args():
    return pagination_args(
        request.args,
        current_app.config['DEFAULT_PAGE_LIMIT'],
        current_app.config['MAX_PAGE_LIMIT'],
    )


def _post_list_response(posts, total, page, limit, viewer_id):
    response = jsonify([post_json(post, viewer_id) for post in posts])
    response.headers['X-Total-Count'] = str(total)
    response.headers['X-Page'] = str(page)
    response.headers['X-Limit'] = str(limit)
    return response


def create_auth_blueprint(services):
    auth_bp = Blueprint('auth', __name__)

    def _auth_response(user):
        token = create_access_token(identity=str(user.id))
        return {"token": token, "user": user_json(user, private=True)}

    @auth_bp.route('/register', methods=['POST'])
    def register():
        """User Registration Endpoint"""
        fields = register_form(_json_body())
        user = services.users.register(**fields)
        return jsonify(_auth_response(user)), 201

    @auth_bp.route('/login', methods=['POST'])
    def login():
        """User Login Endpoint"""
        fields = login_form(_json_body())
        user = services.users.authenticate(fields['email'], fields['password'])
        return jsonify(_auth_response(user)), 200

    return auth_bp


def create_posts_blueprint(services):
    posts_bp = Blueprint('posts', __name__)

    @posts_bp.route('', methods=['GET'])
    @jwt_required(optional=True)
    def list_posts():
        page, limit = _page_args()
        author = request.args.get('author', type=int)
        posts, total = services.posts.list(
            page=page,
            limit=limit,
            tag=request.args.get('tag') or None,
            author_id=author,
            hashtag=request.args.get('hashtag') or None,
        )
        return _post_list_response(posts, total, page, limit, _optional_caller_id())

    @posts_bp.route('/hashtag/<string:name>', methods=['GET'])
    @jwt_required(optional=True)
    def posts_by_hashtag(name):
        page, limit = _page_args()
        posts, total = services.posts.list(page=page, limit=limit, hashtag=name)
        return _post_list_response(posts, total, page, limit, _optional_caller_id())

    @posts_bp.route('/<int:post_id>', methods=['GET'])
    @jwt_required(optional=True)
    def get_post(post_id):
        post = services.posts.get(post_id)
        return jsonify(post_json(post, _optional_caller_id(), with_comments=True)), 200

    @posts_bp.route('', methods=['POST'])
    @jwt_required()
    def create_post():
        fields = post_form(_json_body())
        caller_id = _caller_id(services)
        post = services.posts.create(caller_id, fields)
        return jsonify(post_json(post, caller_id)), 201

    @posts_bp.route('/<int:post_id>', methods=['PUT'])
    @jwt_required()
    def update_post(post_id):
        fields = post_form(_json_body(), partial=True)
        caller_id = _caller_id(services)
        post = services.posts.update(post_id, caller_id, fields)
        return jsonify(post_json(post, caller_id)), 200

    @posts_bp.route('/<int:post_id>', methods=['DELETE'])
    @jwt_required()
    def delete_post(post_id):
        services.posts.delete(post_id, _caller_id(services))
        return jsonify({"message": "Post deleted successfully"}), 200

    @posts_bp.route('/<int:post_id>/like', methods=['PUT'])
    @jwt_required()
    def toggle_like(post_id):
        caller_id = _caller_id(services)
        post, liked = services.posts.toggle_like(post_id, caller_id)
        data = post_json(post, caller_id)
        data["isLiked"] = liked
        return jsonify(data), 200

    @posts_bp.route('/<int:post_id>/comments', methods=['POST'])
    @jwt_required()
    def add_comment(post_id):
        fields = comment_form(_json_body())
        caller_id = _caller_id(services)
        post = services.posts.add_comment(post_id, caller_id, fields['content'])
        return jsonify(post_json(post, caller_id, with_comments=True)), 201

    return posts_bp


def create_hashtags_blueprint(services):
    hashtags_bp = Blueprint('hashtags', __name__)

    @hashtags_bp.route('', methods=['GET'])
    def popular_hashtags():
        limit = request.args.get('limit', 20, type=int)
        if not 1 <= limit <= current_app.config['MAX_PAGE_LIMIT']:
            raise ValidationError(errors={'limit': 'Limit is out of range'})
        return jsonify([
            {
                "id": hashtag.id,
                "name": hashtag.name,
                "posts_count": posts_count,
                "created_at": _iso(hashtag.created_at),
            }
            for hashtag, posts_count in services.posts.popular_hashtags(limit)
        ]), 200

    return hashtags_bp


def create_comments_blueprint(services):
    comments_bp = Blueprint('comments', __name__)

    @comments_bp.route('', methods=['POST'])
    @jwt_required()
    def create_comment():
        fields = comment_form(_json_body(), require_post=True)
        comment = services.comments.create(fields['post_id'], _caller_id(services), fields['content'])
        return jsonify(comment_json(comment)), 201

    @comments_bp.route('/post/<int:post_id>', methods=['GET'])
    def comments_for_post(post_id):
        comments = services.comments.list_for_post(post_id)
        return jsonify([comment_json(comment) for comment in comments]), 200

    @comments_bp.route('/<int:comment_id>', methods=['PUT'])
    @jwt_required()
    def update_comment(comment_id):
        fields = comment_form(_json_body())
        comment = services.comments.update(comment_id, _caller_id(services), fields['content'])
        return jsonify(comment_json(comment)), 200

    @comments_bp.route('/<int:comment_id>', methods=['DELETE'])
    @jwt_required()
    def delete_comment(comment_id):
        services.comments.delete(comment_id, _caller_id(services))
        return jsonify({"message": "Comment deleted successfully"}), 200

    return comments_bp


def create_users_blueprint(services):
    users_bp = Blueprint('users', __name__)

    @users_bp.route('/me', methods=['GET'])
    @jwt_required()
    def current_user_profile():
        """Get current user's profile"""
        user = services.users.get(_caller_id(services))
        return jsonify(user_json(user, private=True)), 200

    @users_bp.route('/me', methods=['PUT', 'PATCH'])
    @jwt_required()
    def update_current_user_profile():
        """Update current user's profile"""
        fields = profile_form(_json_body())
        user = services.users.update_profile(_caller_id(services), fields)
        return jsonify(user_json(user, private=True)), 200

    @users_bp.route('/me/avatar', methods=['POST'])
    @users_bp.route('/avatar', methods=['POST'])
    @jwt_required()
    def upload_avatar():
        user = services.users.set_avatar(_caller_id(services), request.files.get('avatar'))
        return jsonify({"avatarUrl": user.avatar, "user": user_json(user, private=True)}), 200

    @users_bp.route('/me/avatar', methods=['DELETE'])
    @users_bp.route('/avatar', methods=['DELETE'])
    @jwt_required()
    def remove_avatar():
        user = services.users.remove_avatar(_caller_id(services))
        return jsonify({"message": "Avatar removed", "user": user_json(user, private=True)}), 200

    @users_bp.route('/search', methods=['GET'])
    def search_users():
        page, limit = _page_args()
        users, total = services.users.search(
            request.args.get('query', ''),
            sort=request.args.get('sort', 'relevance'),
            page=page,
            limit=limit,
        )
        return jsonify({
            "users": [user_json(user) for user in users],
            "total": total,
            "page": page,
            "limit": limit,
        }), 200

    @users_bp.route('/<int:user_id>', methods=['GET'])
    @jwt_required(optional=True)
    def get_user_profile(user_id):
        user = services.users.get(user_id)
        viewer_id = _optional_caller_id()
        is_following = None
        if viewer_id is not None and viewer_id != user.id:
            is_following = services.users.is_following(viewer_id, user.id)
        return jsonify(user_json(user, private=viewer_id == user.id, is_following=is_following)), 200

    @users_bp.route('/<int:user_id>/posts', methods=['GET'])
    @jwt_required(optional=True)
    def get_user_posts(user_id):
        services.users.get(user_id)
        page, limit = _page_args()
        posts, total = services.posts.list(page=page, limit=limit, author_id=user_id)
        return _post_list_response(posts, total, page, limit, _optional_caller_id())

    @users_bp.route('/<int:user_id>/follow', methods=['POST'])
    @jwt_required()
    def follow_user(user_id):
        target = services.users.follow(_caller_id(services), user_id)
        return jsonify({
            "message": "User followed successfully",
            "user": user_json(target, is_following=True),
        }), 200

    @users_bp.route('/<int:user_id>/unfollow', methods=['POST'])
    @jwt_required()
    def unfollow_user(user_id):
        target = services.users.unfollow(_caller_id(services), user_id)
        return jsonify({
            "message": "User unfollowed successfully",
            "user": user_json(target, is_following=False),
        }), 200

    @users_bp.route('/<int:user_id>/follow/status', methods=['GET'])
    @jwt_required()
    def follow_status(user_id):
        caller_id = _caller_id(services)
        if caller_id == user_id:
            return jsonify({"isFollowing": False}), 200
        services.users.get(user_id)
        return jsonify({"isFollowing": services.users.is_following(caller_id, user_id)}), 200

    @users_bp.route('/<int:user_id>/followers', methods=['GET'])
    def get_followers(user_id):
        followers = services.users.followers(user_id)
        return jsonify({"followers": [user_json(user) for user in followers]}), 200

    @users_bp.route('/<int:user_id>/following', methods=['GET'])
    def get_following(user_id):
        following = services.users.following(user_id)
        return jsonify({"following": [user_json(user) for user in following]}), 200

    return users_bp


def create_media_blueprint(services):
    media_bp = Blueprint('media', __name__)

    @media_bp.route('/music/upload', methods=['POST'])
    @jwt_required()
    def upload_music():
        user = services.users.set_music(
            _caller_id(services),
            request.files.get('music'),
            title=request.form.get('title'),
            artist=request.form.get('artist'),
        )
        return jsonify(music_json(user)), 200

    @media_bp.route('/music/remove', methods=['DELETE'])
    @jwt_required()
    def remove_music():
        services.users.remove_music(_caller_id(services))
        return jsonify({"message": "Music removed"}), 200

    @media_bp.route('/videos/upload', methods=['POST'])
    @jwt_required()
    def upload_video():
        user = services.users.set_video(
            _caller_id(services),
            request.files.get('video'),
            title=request.form.get('title'),
        )
        return jsonify(video_json(user)), 200

    @media_bp.route('/videos/remove', methods=['DELETE'])
    @jwt_required()
    def remove_video():
        services.users.remove_video(_caller_id(services))
        return jsonify({"message": "Video removed"}), 200

    return media_bp
