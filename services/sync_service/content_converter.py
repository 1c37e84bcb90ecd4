"""Convert Evernote ENML into sanitized post HTML."""

import html
import json
import logging
import re
from dataclasses import dataclass, field
from html.entities import name2codepoint
from typing import Awaitable, Callable, List, Optional

from lxml import etree

from shared.errors import ContentConversionError
from shared.models import Note

logger = logging.getLogger(__name__)

ResourceFetcher = Callable[[str], Awaitable[bytes]]

DEFAULT_EXCERPT_LENGTH = 200

_XML_DECL_RE = re.compile(r'<\?xml[^>]*\?>')
_DOCTYPE_RE = re.compile(r'<!DOCTYPE[^>]*>', re.IGNORECASE)
_ENTITY_RE = re.compile(r'&([a-zA-Z][a-zA-Z0-9]*);')
_XML_ENTITIES = {'amp', 'lt', 'gt', 'quot', 'apos'}

_BLOCK_TAG_RE = re.compile(
    r'</?(?:en-note|div|p|br|li|ul|ol|h[1-6]|tr|td|th|table|blockquote|pre|hr)\b[^>]*>',
    re.IGNORECASE
)
_MEDIA_TAG_RE = re.compile(r'<(?:en-media|img)\b[^>]*>(?:\s*</en-media>)?', re.IGNORECASE)
_TAG_RE = re.compile(r'<[^>]*>')
_WHITESPACE_RE = re.compile(r'\s+')

# Dropped together with everything inside them
_DROP_TAGS = {
    'script', 'style', 'iframe', 'object', 'embed', 'applet', 'form',
    'base', 'link', 'meta', 'en-crypt',
}
_URL_ATTRIBUTES = {'href', 'src', 'action', 'formaction', 'xlink:href'}


@dataclass
class ConversionResult:
    """Converted post content."""
    html: str
    excerpt: str
    image_count: int = 0
    errors: List[str] = field(default_factory=list)


def generate_excerpt(content: str, max_length: int = DEFAULT_EXCERPT_LENGTH) -> str:
    """
    Plain-text excerpt of ENML or HTML content.

    Strips markup and media, collapses whitespace and truncates to
    ``max_length`` characters, appending ``...`` when truncated.
    """
    text = _XML_DECL_RE.sub('', content or '')
    text = _DOCTYPE_RE.sub('', text)
    text = _MEDIA_TAG_RE.sub('', text)
    text = _BLOCK_TAG_RE.sub(' ', text)
    text = _TAG_RE.sub('', text)
    text = html.unescape(text)
    text = _WHITESPACE_RE.sub(' ', text).strip()

    if len(text) > max_length:
        return text[:max_length] + '...'
    return text


def _numeric_entities(text: str) -> str:
    # ENML relies on the XHTML DTD for named entities, which we never load
    def replace(match):
        name = match.group(1)
        if name in _XML_ENTITIES:
            return match.group(0)
        codepoint = name2codepoint.get(name)
        return f'&#{codepoint};' if codepoint else match.group(0)

    return _ENTITY_RE.sub(replace, text)


def _local_name(element) -> str:
    return etree.QName(element).localname.lower()


def _remove_keeping_tail(element) -> None:
    parent = element.getparent()
    if parent is None:
        return
    if element.tail:
        previous = element.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or '') + element.tail
        else:
            parent.text = (parent.text or '') + element.tail
    parent.remove(element)


def _replace_keeping_tail(element, replacement) -> None:
    replacement.tail = element.tail
    element.tail = None
    element.getparent().replace(element, replacement)


class ContentConverter:
    """Turns a note's ENML into the HTML stored on its post."""

    def __init__(self, image_store, excerpt_length: int = DEFAULT_EXCERPT_LENGTH):
        """
        Initialize the converter.

        Args:
            image_store: Store with image_exists/store_image coroutines
            excerpt_length: Maximum excerpt length in characters
        """
        self.image_store = image_store
        self.excerpt_length = excerpt_length

    def parse(self, raw_content: str):
        """Parse ENML into an lxml tree rooted at en-note."""
        cleaned = _XML_DECL_RE.sub('', raw_content or '')
        cleaned = _DOCTYPE_RE.sub('', cleaned).strip()
        if not cleaned.lower().startswith('<en-note'):
            cleaned = f'<en-note>{cleaned}</en-note>'

        parser = etree.XMLParser(
            recover=True,
            resolve_entities=False,
            no_network=True,
            load_dtd=False,
            remove_comments=True,
            remove_pis=True
        )
        try:
            root = etree.fromstring(_numeric_entities(cleaned).encode('utf-8'), parser=parser)
        except etree.XMLSyntaxError as e:
            raise ContentConversionError(f"Unparseable note content: {e}") from e

        if root is None:
            raise ContentConversionError("Unparseable note content")
        return root

    async def convert(
        self,
        raw_content: str,
        note: Note,
        post_id: str,
        resource_fetcher: ResourceFetcher
    ) -> ConversionResult:
        """
        Convert a note for the given post.

        Media whose resource is missing from the note is dropped and reported
        in ``errors``. Failures to fetch or store a resource propagate.

        Args:
            raw_content: ENML markup
            note: The note the content belongs to (for its resources)
            post_id: Post the images are stored under
            resource_fetcher: Coroutine returning resource bytes by id

        Returns:
            ConversionResult with HTML, excerpt, image count and errors
        """
        root = self.parse(raw_content)
        errors: List[str] = []
        image_count = 0
        dropped = set()

        for element in list(root.iter()):
            if not isinstance(element.tag, str):
                continue
            if any(ancestor in dropped for ancestor in element.iterancestors()):
                continue
            name = _local_name(element)

            if name in _DROP_TAGS and element is not root:
                dropped.add(element)
                _remove_keeping_tail(element)
                continue

            if name == 'en-todo':
                checkbox = etree.Element('input', type='checkbox', disabled='disabled')
                if element.get('checked', '').lower() == 'true':
                    checkbox.set('checked', 'checked')
                _replace_keeping_tail(element, checkbox)
                continue

            if name == 'en-media':
                img = await self._convert_media(element, note, post_id, resource_fetcher, errors)
                if img is None:
                    _remove_keeping_tail(element)
                else:
                    _replace_keeping_tail(element, img)
                    image_count += 1
                continue

            self._sanitize_attributes(element)

        root.tag = 'div'
        root.attrib.clear()

        return ConversionResult(
            html=etree.tostring(root, method='html', encoding='unicode'),
            excerpt=generate_excerpt(raw_content, self.excerpt_length),
            image_count=image_count,
            errors=errors
        )

    async def _convert_media(
        self,
        element,
        note: Note,
        post_id: str,
        resource_fetcher: ResourceFetcher,
        errors: List[str]
    ) -> Optional[etree._Element]:
        content_hash = element.get('hash')
        if not content_hash:
            errors.append("Media tag without hash dropped")
            return None

        resource = note.find_resource(content_hash)
        if resource is None:
            logger.warning(f"Resource not found for hash {content_hash} in note {note.id}")
            errors.append(f"Image resource not found: {content_hash}")
            return None

        if not resource.mime_type.lower().startswith('image/'):
            errors.append(f"Unsupported attachment type {resource.mime_type}: {content_hash}")
            return None

        title = element.get('title') or element.get('alt')

        stored = await self.image_store.image_exists(content_hash, post_id)
        if stored:
            logger.debug(f"Using existing image {stored.url} for post {post_id}")
        else:
            data = await resource_fetcher(resource.id)
            stored = await self.image_store.store_image(
                data,
                content_hash,
                resource.mime_type,
                post_id,
                title=title,
                filename=resource.filename
            )

        img = etree.Element('img', src=stored.url, alt=title or 'Image')
        width = element.get('width') or (str(resource.width) if resource.width else None)
        height = element.get('height') or (str(resource.height) if resource.height else None)
        if width and height:
            img.set('width', width)
            img.set('height', height)

        if not stored.exif:
            return img
        # Captions are rendered client-side from data-exif
        figure = etree.Element('figure')
        figure.append(img)
        etree.SubElement(figure, 'figcaption').set('data-exif', json.dumps(stored.exif, sort_keys=True))
        return figure

    @staticmethod
    def _sanitize_attributes(element) -> None:
        for attribute in list(element.attrib):
            lowered = attribute.lower()
            if lowered.startswith('on'):
                del element.attrib[attribute]
            elif lowered in _URL_ATTRIBUTES:
                value = _WHITESPACE_RE.sub('', element.get(attribute, '')).lower()
                if value.startswith(('javascript:', 'vbscript:', 'data:text/html')):
                    del element.attrib[attribute]
