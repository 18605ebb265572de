"""Canonical forms for loosely structured visit input."""
from urllib.parse import urljoin, urlsplit

DEVICE_TYPES = ('desktop', 'mobile', 'tablet', 'other')

_PLACEHOLDER_ORIGIN = 'http://placeholder'


def normalize_page_path(path=None):
    """Turn a URL or bare path into an absolute path such as ``/blog/post``."""
    if not path:
        return '/'

    try:
        if path.startswith('http'):
            parsed = urlsplit(path)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(f'Not an absolute URL: {path!r}')
        else:
            parsed = urlsplit(urljoin(_PLACEHOLDER_ORIGIN + '/', path))
            if parsed.scheme != 'http':
                raise ValueError(f'Unsupported URL scheme: {path!r}')
        # Accessing port validates the netloc
        parsed.port
        return parsed.path or '/'
    except ValueError:
        return path if path.startswith('/') else f'/{path}'


def normalize_device_type(device_type=None, user_agent=None):
    """Explicit label first, then a user agent heuristic, then ``other``."""
    label = (device_type or '').strip().lower()
    if label in DEVICE_TYPES:
        return label

    ua = (user_agent or '').lower()
    if 'mobile' in ua:
        return 'mobile'
    if 'tablet' in ua or 'ipad' in ua:
        return 'tablet'
    if ua:
        return 'desktop'

    return 'other'
