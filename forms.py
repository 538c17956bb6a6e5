# Input validation for request payloads
import re
from urllib.parse import urlparse

from errors import ValidationError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_PASSWORD_LENGTH = 6
MIN_USERNAME_LENGTH = 3
MAX_TITLE_LENGTH = 255
MAX_TAG_LENGTH = 100


def validate_email(email):
    return isinstance(email, str) and bool(EMAIL_RE.match(email.strip()))


def validate_password(password):
    return isinstance(password, str) and len(password) >= MIN_PASSWORD_LENGTH


def validate_username(username):
    return isinstance(username, str) and len(username.strip()) >= MIN_USERNAME_LENGTH


def validate_url(value):
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def _clean(value):
    return value.strip() if isinstance(value, str) else value


def _require_dict(data):
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _raise_if(errors):
    if errors:
        raise ValidationError(errors=errors)


def register_form(data):
    data = _require_dict(data)
    errors = {}
    if not validate_email(data.get('email')):
        errors['email'] = 'Please enter a valid email'
    if not validate_password(data.get('password')):
        errors['password'] = 'Password must be at least 6 characters long'
    if not validate_username(data.get('username')):
        errors['username'] = 'Username must be at least 3 characters long'
    _raise_if(errors)
    return {
        'email': data['email'].strip().lower(),
        'password': data['password'],
        'username': data['username'].strip(),
    }


def login_form(data):
    data = _require_dict(data)
    errors = {}
    if not validate_email(data.get('email')):
        errors['email'] = 'Please enter a valid email'
    if not isinstance(data.get('password'), str) or not data.get('password'):
        errors['password'] = 'Password is required'
    _raise_if(errors)
    return {'email': data['email'].strip().lower(), 'password': data['password']}


def post_form(data, partial=False):
    """Validate a post payload; with ``partial`` only the given fields are checked."""
    data = _require_dict(data)
    errors = {}
    cleaned = {}
    for field, label in (('title', 'Title'), ('content', 'Content')):
        if field not in data and partial:
            continue
        value = _clean(data.get(field))
        if not isinstance(value, str) or not value:
            errors[field] = f'{label} is required'
        elif field == 'title' and len(value) > MAX_TITLE_LENGTH:
            errors[field] = f'Title must be at most {MAX_TITLE_LENGTH} characters'
        else:
            cleaned[field] = value
    if 'tag' in data:
        tag = _clean(data.get('tag'))
        if tag is not None and not isinstance(tag, str):
            errors['tag'] = 'Tag must be a string'
        elif tag and len(tag) > MAX_TAG_LENGTH:
            errors['tag'] = f'Tag must be at most {MAX_TAG_LENGTH} characters'
        else:
            cleaned['tag'] = tag or None
    _raise_if(errors)
    return cleaned


def comment_form(data, require_post=False):
    data = _require_dict(data)
    errors = {}
    content = _clean(data.get('content'))
    if not isinstance(content, str) or not content:
        errors['content'] = 'Comment content is required'
    post_id = data.get('postId', data.get('post_id'))
    if require_post:
        try:
            post_id = int(post_id)
        except (TypeError, ValueError):
            errors['postId'] = 'A valid post id is required'
    _raise_if(errors)
    cleaned = {'content': content}
    if require_post:
        cleaned['post_id'] = post_id
    return cleaned


def profile_form(data):
    data = _require_dict(data)
    errors = {}
    cleaned = {}
    if data.get('username') is not None:
        if not validate_username(data['username']):
            errors['username'] = 'Username must be at least 3 characters long'
        else:
            cleaned['username'] = data['username'].strip()
    if data.get('bio') is not None:
        if not isinstance(data['bio'], str):
            errors['bio'] = 'Bio must be a string'
        else:
            cleaned['bio'] = data['bio'].strip()
    if data.get('avatar'):
        if not validate_url(data['avatar']):
            errors['avatar'] = 'Avatar must be a valid URL'
        else:
            cleaned['avatar'] = data['avatar'].strip()
    _raise_if(errors)
    return cleaned


def pagination_args(args, default_limit, max_limit):
    errors = {}
    try:
        page = int(args.get('page', 1))
        if page < 1:
            raise ValueError
    except (TypeError, ValueError):
        errors['page'] = 'Page must be a positive integer'
        page = 1
    try:
        limit = int(args.get('limit', default_limit))
        if not 1 <= limit <= max_limit:
            raise ValueError
    except (TypeError, ValueError):
        errors['limit'] = f'Limit must be between 1 and {max_limit}'
        limit = default_limit
    _raise_if(errors)
    return page, limit
