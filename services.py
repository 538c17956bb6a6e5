# Business logic for users, posts, comments and follows
import logging
import re
from contextlib import contextmanager

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from errors import (
    AlreadyFollowing,
    AuthorizationError,
    ConflictError,
    InvalidCredentials,
    NotFollowing,
    NotFoundError,
    ValidationError,
)
from models import Comment, Follow, Hashtag, Like, Post, User

logger = logging.getLogger(__name__)

HASHTAG_RE = re.compile(r"#([\w\u0590-\u05ff]+)")

SEARCH_SORTS = ('relevance', 'followers', 'posts', 'recent')


def extract_hashtags(text):
    """Return the distinct hashtags in ``text``, lower-cased, in order of appearance."""
    seen = []
    for match in HASHTAG_RE.findall(text or ''):
        name = match.lower()
        if name not in seen:
            seen.append(name)
    return seen


def authorize_owner(owner_id, caller_id, action='modify', resource='resource'):
    """Raise ``AuthorizationError`` unless the caller owns the resource."""
    if owner_id is None or caller_id is None or int(owner_id) != int(caller_id):
        raise AuthorizationError(f'Not authorized to {action} this {resource}')


@contextmanager
def unit_of_work(session):
    """Commit on success, roll back on any error."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def lock_users_statement(*user_ids):
    return (
        select(User.id)
        .where(User.id.in_(sorted(set(user_ids))))
        .order_by(User.id)
        .with_for_update()
    )


def lock_users(session, *user_ids):
    """Row-lock the given users, in id order, until the transaction ends."""
    session.execute(lock_users_statement(*user_ids))


def like_pattern(text, prefix=False):
    """Build an ILIKE pattern matching ``text`` literally (escape char ``\\``)."""
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f'{escaped}%' if prefix else f'%{escaped}%'


def refresh_follow_counters(session, *user_ids):
    """Recompute followers/following counts of ``user_ids`` from ``user_follows``."""
    session.flush()
    for user_id in set(user_ids):
        followers = select(func.count(Follow.id)).where(Follow.following_id == user_id).scalar_subquery()
        following = select(func.count(Follow.id)).where(Follow.follower_id == user_id).scalar_subquery()
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(followers_count=followers, following_count=following)
            .execution_options(synchronize_session=False)
        )


def refresh_posts_count(session, user_id):
    session.flush()
    posts = select(func.count(Post.id)).where(Post.author_id == user_id).scalar_subquery()
    session.execute(
        update(User)
        .where(User.id == user_id)
        .values(posts_count=posts)
        .execution_options(synchronize_session=False)
    )


def recount_all(session):
    """Repair every user's denormalized counters; returns the number of users touched."""
    user_ids = session.scalars(select(User.id)).all()
    with unit_of_work(session):
        for user_id in user_ids:
            refresh_follow_counters(session, user_id)
            refresh_posts_count(session, user_id)
    return len(user_ids)


def _paginate(session, stmt, page, limit):
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
    items = session.scalars(stmt.limit(limit).offset((page - 1) * limit)).all()
    return items, total


class UserService:
    def __init__(self, session, bcrypt, storage):
        self.session = session
        self.bcrypt = bcrypt
        self.storage = storage

    def get(self, user_id):
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError('User not found')
        return user

    def find_by_email(self, email):
        return self.session.scalar(select(User).where(User.email == email))

    def register(self, email, password, username):
        if self.find_by_email(email) is not None:
            raise ConflictError('User already exists')
        if self.session.scalar(select(User.id).where(User.username == username)) is not None:
            raise ConflictError('Username already taken')

        user = User(
            email=email,
            username=username,
            password_hash=self.bcrypt.generate_password_hash(password).decode('utf-8'),
        )
        try:
            with unit_of_work(self.session):
                self.session.add(user)
        except IntegrityError:
            raise ConflictError('User already exists')
        logger.info("Registered user %s (%s)", user.id, user.username)
        return user

    def authenticate(self, email, password):
        user = self.find_by_email(email)
        if user is None or not self.bcrypt.check_password_hash(user.password_hash, password):
            raise InvalidCredentials()
        self.ensure_active(user)
        return user

    def ensure_active(self, user):
        if user is not None and user.status != 'active':
            raise AuthorizationError(f'Account is {user.status}')

    def ensure_active_id(self, user_id):
        """Refuse callers whose account was banned or deactivated after login."""
        self.ensure_active(self.session.get(User, user_id))

    def update_profile(self, user_id, fields):
        user = self.get(user_id)
        new_username = fields.get('username')
        if new_username and new_username != user.username:
            taken = self.session.scalar(select(User.id).where(User.username == new_username))
            if taken is not None:
                raise ConflictError('Username already taken')
        try:
            with unit_of_work(self.session):
                for field, value in fields.items():
                    setattr(user, field, value)
        except IntegrityError:
            raise ConflictError('Username already taken')
        return user

    def search(self, query, sort='relevance', page=1, limit=20):
        query = (query or '').strip()
        if not query:
            return [], 0
        if sort not in SEARCH_SORTS:
            raise ValidationError(errors={'sort': f"Sort must be one of: {', '.join(SEARCH_SORTS)}"})

        pattern = like_pattern(query)
        stmt = select(User).where(
            User.status == 'active',
            or_(User.username.ilike(pattern, escape='\\'), User.bio.ilike(pattern, escape='\\')),
        )
        if sort == 'followers':
            stmt = stmt.order_by(User.followers_count.desc(), User.id)
        elif sort == 'posts':
            stmt = stmt.order_by(User.posts_count.desc(), User.id)
        elif sort == 'recent':
            stmt = stmt.order_by(User.created_at.desc(), User.id.desc())
        else:
            rank = case(
                (func.lower(User.username) == query.lower(), 0),
                (User.username.ilike(like_pattern(query, prefix=True), escape='\\'), 1),
                (User.username.ilike(pattern, escape='\\'), 2),
                else_=3,
            )
            stmt = stmt.order_by(rank, User.followers_count.desc(), User.id)
        return _paginate(self.session, stmt, page, limit)

    # Profile media

    @contextmanager
    def _stored_upload(self, file_storage, kind):
        """Save the upload, then commit; the new file is removed if the commit fails."""
        url, original_name = self.storage.save(file_storage, kind)
        try:
            with unit_of_work(self.session):
                yield url, original_name
        except Exception:
            self.storage.delete(url)
            raise

    def set_avatar(self, user_id, file_storage):
        user = self.get(user_id)
        previous = user.avatar
        with self._stored_upload(file_storage, 'avatar') as (url, _):
            user.avatar = url
        self.storage.delete(previous)
        return user

    def remove_avatar(self, user_id):
        user = self.get(user_id)
        previous = user.avatar
        with unit_of_work(self.session):
            user.avatar = None
        self.storage.delete(previous)
        return user

    def set_music(self, user_id, file_storage, title=None, artist=None):
        user = self.get(user_id)
        previous = user.music_url
        with self._stored_upload(file_storage, 'music') as (url, original_name):
            user.music_url = url
            user.music_title = (title or '').strip() or original_name.rsplit('.', 1)[0]
            user.music_artist = (artist or '').strip() or None
        self.storage.delete(previous)
        return user

    def remove_music(self, user_id):
        user = self.get(user_id)
        previous = user.music_url
        with unit_of_work(self.session):
            user.music_url = user.music_title = user.music_artist = None
        self.storage.delete(previous)
        return user

    def set_video(self, user_id, file_storage, title=None):
        user = self.get(user_id)
        previous = user.video_url
        with self._stored_upload(file_storage, 'video') as (url, original_name):
            user.video_url = url
            user.video_title = (title or '').strip() or original_name.rsplit('.', 1)[0]
        self.storage.delete(previous)
        return user

    def remove_video(self, user_id):
        user = self.get(user_id)
        previous = user.video_url
        with unit_of_work(self.session):
            user.video_url = user.video_title = None
        self.storage.delete(previous)
        return user

    # Follow graph

    def is_following(self, follower_id, following_id):
        edge = self.session.scalar(
            select(Follow.id).where(Follow.follower_id == follower_id, Follow.following_id == following_id)
        )
        return edge is not None

    def follow(self, follower_id, following_id):
        if int(follower_id) == int(following_id):
            raise ValidationError('You cannot follow yourself')
        self.get(follower_id)
        target = self.get(following_id)

        try:
            with unit_of_work(self.session):
                # Held until commit, so the recount below sees every committed edge
                lock_users(self.session, follower_id, following_id)
                if self.is_following(follower_id, following_id):
                    raise AlreadyFollowing()
                self.session.add(Follow(follower_id=follower_id, following_id=following_id))
                refresh_follow_counters(self.session, follower_id, following_id)
        except IntegrityError:
            # Lost a race with an identical request
            raise AlreadyFollowing()
        logger.info("User %s followed %s", follower_id, following_id)
        return target

    def unfollow(self, follower_id, following_id):
        target = self.get(following_id)
        with unit_of_work(self.session):
            lock_users(self.session, follower_id, following_id)
            edge = self.session.scalar(
                select(Follow).where(Follow.follower_id == follower_id, Follow.following_id == following_id)
            )
            if edge is None:
                raise NotFollowing()
            self.session.delete(edge)
            refresh_follow_counters(self.session, follower_id, following_id)
        logger.info("User %s unfollowed %s", follower_id, following_id)
        return target

    def followers(self, user_id):
        self.get(user_id)
        stmt = (
            select(User)
            .join(Follow, Follow.follower_id == User.id)
            .where(Follow.following_id == user_id)
            .order_by(Follow.created_at.desc(), Follow.id.desc())
        )
        return self.session.scalars(stmt).all()

    def following(self, user_id):
        self.get(user_id)
        stmt = (
            select(User)
            .join(Follow, Follow.following_id == User.id)
            .where(Follow.follower_id == user_id)
            .order_by(Follow.created_at.desc(), Follow.id.desc())
        )
        return self.session.scalars(stmt).all()


class PostService:
    def __init__(self, session):
        self.session = session

    def _base_query(self):
        return select(Post).options(
            selectinload(Post.author),
            selectinload(Post.likes),
            selectinload(Post.hashtags),
            selectinload(Post.comments).selectinload(Comment.author),
        )

    def get(self, post_id):
        post = self.session.scalar(self._base_query().where(Post.id == post_id))
        if post is None:
            raise NotFoundError('Post not found')
        return post

    def list(self, page=1, limit=20, tag=None, author_id=None, hashtag=None):
        stmt = self._base_query()
        if tag:
            stmt = stmt.where(Post.tag == tag)
        if author_id is not None:
            stmt = stmt.where(Post.author_id == author_id)
        if hashtag:
            stmt = stmt.where(Post.hashtags.any(Hashtag.name == hashtag.lstrip('#').lower()))
        stmt = stmt.order_by(Post.created_at.desc(), Post.id.desc())
        return _paginate(self.session, stmt, page, limit)

    def _resolve_hashtags(self, *texts):
        names = extract_hashtags(' '.join(t for t in texts if t))
        if not names:
            return []
        existing = {
            h.name: h for h in self.session.scalars(select(Hashtag).where(Hashtag.name.in_(names)))
        }
        return [existing.get(name) or Hashtag(name=name) for name in names]

    def create(self, author_id, fields):
        if self.session.get(User, author_id) is None:
            raise ValidationError(f'User with id {author_id} does not exist')

        post = Post(
            title=fields['title'],
            content=fields['content'],
            tag=fields.get('tag'),
            author_id=author_id,
        )
        with unit_of_work(self.session):
            lock_users(self.session, author_id)
            post.hashtags = self._resolve_hashtags(post.title, post.content)
            self.session.add(post)
            refresh_posts_count(self.session, author_id)
        logger.info("User %s created post %s", author_id, post.id)
        return self.get(post.id)

    def update(self, post_id, caller_id, fields):
        post = self.get(post_id)
        authorize_owner(post.author_id, caller_id, 'update', 'post')
        with unit_of_work(self.session):
            for field, value in fields.items():
                setattr(post, field, value)
            if 'title' in fields or 'content' in fields:
                post.hashtags = self._resolve_hashtags(post.title, post.content)
        return self.get(post_id)

    def delete(self, post_id, caller_id):
        post = self.get(post_id)
        authorize_owner(post.author_id, caller_id, 'delete', 'post')
        author_id = post.author_id
        with unit_of_work(self.session):
            lock_users(self.session, author_id)
            self.session.delete(post)
            refresh_posts_count(self.session, author_id)
        logger.info("User %s deleted post %s", caller_id, post_id)

    def toggle_like(self, post_id, user_id):
        """Like the post, or unlike it if the user already does; returns ``(post, liked)``."""
        post = self.get(post_id)
        existing = self.session.scalar(select(Like).where(Like.post_id == post_id, Like.user_id == user_id))
        try:
            with unit_of_work(self.session):
                if existing is not None:
                    self.session.delete(existing)
                else:
                    self.session.add(Like(post_id=post_id, user_id=user_id))
        except IntegrityError:
            raise ConflictError('Like already recorded')
        return self.get(post_id), existing is None

    def add_comment(self, post_id, author_id, content):
        self.get(post_id)
        comment = Comment(post_id=post_id, author_id=author_id, content=content)
        with unit_of_work(self.session):
            self.session.add(comment)
        return self.get(post_id)

    def popular_hashtags(self, limit=20):
        count = func.count(Post.id).label('posts_count')
        stmt = (
            select(Hashtag, count)
            .join(Hashtag.posts)
            .group_by(Hashtag.id)
            .order_by(count.desc(), Hashtag.name)
            .limit(limit)
        )
        return self.session.execute(stmt).all()


class CommentService:
    def __init__(self, session):
        self.session = session

    def get(self, comment_id):
        comment = self.session.get(Comment, comment_id)
        if comment is None:
            raise NotFoundError('Comment not found')
        return comment

    def create(self, post_id, author_id, content):
        if self.session.get(Post, post_id) is None:
            raise NotFoundError('Post not found')
        comment = Comment(post_id=post_id, author_id=author_id, content=content)
        with unit_of_work(self.session):
            self.session.add(comment)
        return comment

    def list_for_post(self, post_id):
        if self.session.get(Post, post_id) is None:
            raise NotFoundError('Post not found')
        stmt = (
            select(Comment)
            .options(selectinload(Comment.author))
            .where(Comment.post_id == post_id)
            .order_by(Comment.created_at.desc(), Comment.id.desc())
        )
        return self.session.scalars(stmt).all()

    def update(self, comment_id, caller_id, content):
        comment = self.get(comment_id)
        authorize_owner(comment.author_id, caller_id, 'update', 'comment')
        with unit_of_work(self.session):
            comment.content = content
        return comment

    def delete(self, comment_id, caller_id):
        comment = self.get(comment_id)
        authorize_owner(comment.author_id, caller_id, 'delete', 'comment')
        with unit_of_work(self.session):
            self.session.delete(comment)


class Services:
    """Service objects sharing one injected database session."""

    def __init__(self, session, bcrypt, storage):
        self.session = session
        self.users = UserService(session, bcrypt, storage)
        self.posts = PostService(session)
        self.comments = CommentService(session)
