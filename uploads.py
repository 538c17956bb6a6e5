# Local disk storage for profile media
import logging
import os
import uuid

from werkzeug.utils import secure_filename

from errors import ValidationError

logger = logging.getLogger(__name__)

MEDIA_KINDS = {
    'avatar': {
        'mimetype': 'image/',
        'extensions': {'png', 'jpg', 'jpeg', 'gif', 'webp'},
        'config_key': 'AVATAR_MAX_BYTES',
        'label': 'Image',
    },
    'music': {
        'mimetype': 'audio/',
        'extensions': {'mp3', 'wav', 'ogg', 'm4a', 'flac', 'aac'},
        'config_key': 'MUSIC_MAX_BYTES',
        'label': 'Audio',
    },
    'video': {
        'mimetype': 'video/',
        'extensions': {'mp4', 'webm', 'mov', 'ogg', 'mkv'},
        'config_key': 'VIDEO_MAX_BYTES',
        'label': 'Video',
    },
}


def allowed_file_extension(filename, extensions):
    if '.' not in filename:
        return False
    return filename.rsplit('.', 1)[1].lower() in extensions


def _file_size(file_storage):
    stream = file_storage.stream
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


class MediaStorage:
    """Saves uploaded files under ``upload_folder`` and serves them from ``url_prefix``."""

    def __init__(self, upload_folder, limits, url_prefix='/uploads'):
        self.upload_folder = upload_folder
        self.limits = limits
        self.url_prefix = url_prefix.rstrip('/')

    def save(self, file_storage, kind):
        """Validate and store an upload; returns ``(url, original_filename)``."""
        rules = MEDIA_KINDS[kind]
        if file_storage is None or not file_storage.filename:
            raise ValidationError(errors={kind: 'No file uploaded'})

        filename = secure_filename(file_storage.filename)
        mimetype = (file_storage.mimetype or '').lower()
        if not filename or not allowed_file_extension(filename, rules['extensions']) \
                or not mimetype.startswith(rules['mimetype']):
            raise ValidationError(errors={kind: f"Please upload a {rules['label'].lower()} file"})

        max_bytes = self.limits[rules['config_key']]
        if _file_size(file_storage) > max_bytes:
            raise ValidationError(errors={
                kind: f"{rules['label']} size should be less than {max_bytes // (1024 * 1024)}MB"
            })

        os.makedirs(self.upload_folder, exist_ok=True)
        name = f"{kind}-{uuid.uuid4().hex}_{filename}"
        file_storage.save(os.path.join(self.upload_folder, name))
        logger.info("Stored %s upload as %s", kind, name)
        return f"{self.url_prefix}/{name}", file_storage.filename

    def delete(self, url):
        """Remove a previously stored file; foreign URLs are ignored."""
        if not url or not url.startswith(self.url_prefix + '/'):
            return False
        name = secure_filename(url[len(self.url_prefix) + 1:])
        path = os.path.join(self.upload_folder, name)
        if os.path.isfile(path):
            os.remove(path)
            return True
        return False
