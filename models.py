# Database models
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

USER_ROLES = ('user', 'admin', 'moderator')
USER_STATUSES = ('active', 'banned', 'inactive')

post_hashtags = db.Table(
    'post_hashtags',
    db.Column('post_id', db.Integer, db.ForeignKey('posts.id', ondelete='CASCADE'), primary_key=True),
    db.Column('hashtag_id', db.Integer, db.ForeignKey('hashtags.id', ondelete='CASCADE'), primary_key=True),
)


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(255), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    bio = db.Column(db.Text)
    avatar = db.Column(db.String(255))

    music_url = db.Column(db.String(255))
    music_title = db.Column(db.String(255))
    music_artist = db.Column(db.String(255))
    video_url = db.Column(db.String(255))
    video_title = db.Column(db.String(255))

    role = db.Column(db.Enum(*USER_ROLES, name='user_role'), nullable=False, default='user')
    status = db.Column(db.Enum(*USER_STATUSES, name='user_status'), nullable=False, default='active')

    followers_count = db.Column(db.Integer, nullable=False, default=0)
    following_count = db.Column(db.Integer, nullable=False, default=0)
    posts_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Post(db.Model):
    __tablename__ = 'posts'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    tag = db.Column(db.String(100))
    author_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    author = db.relationship('User')
    comments = db.relationship('Comment', back_populates='post', cascade='all, delete-orphan',
                               order_by='Comment.created_at')
    likes = db.relationship('Like', back_populates='post', cascade='all, delete-orphan')
    hashtags = db.relationship('Hashtag', secondary=post_hashtags, back_populates='posts')


class Comment(db.Model):
    __tablename__ = 'comments'
    id = db.Column(db.Integer, primary_key=True)
    content = db.Column(db.Text, nullable=False)
    author_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    post_id = db.Column(db.Integer, db.ForeignKey('posts.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    author = db.relationship('User')
    post = db.relationship('Post', back_populates='comments')


class Like(db.Model):
    __tablename__ = 'likes'
    __table_args__ = (db.UniqueConstraint('post_id', 'user_id', name='uq_likes_post_user'),)
    id = db.Column(db.Integer, primary_key=True)
    post_id = db.Column(db.Integer, db.ForeignKey('posts.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    post = db.relationship('Post', back_populates='likes')


class Follow(db.Model):
    __tablename__ = 'user_follows'
    __table_args__ = (
        db.UniqueConstraint('follower_id', 'following_id', name='uq_user_follows_pair'),
        db.CheckConstraint('follower_id <> following_id', name='ck_user_follows_not_self'),
    )
    id = db.Column(db.Integer, primary_key=True)
    follower_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    following_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Hashtag(db.Model):
    __tablename__ = 'hashtags'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    posts = db.relationship('Post', secondary=post_hashtags, back_populates='hashtags')
