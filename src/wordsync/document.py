# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Document model and readable-region discovery.

Documents are parsed from HTML (Markdown is rendered to HTML first) into a
small element tree. The region provider answers the questions the navigator
asks of a document: which block contains a piece of text, which text is
readable, and which block comes next in reading order.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from html.parser import HTMLParser

import markdown

# Elements that never contain children
VOID_TAGS: frozenset[str] = frozenset([
    'area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input', 'link',
    'meta', 'source', 'track', 'wbr',
])

# Text inside these is never spoken
NON_TEXT_TAGS: frozenset[str] = frozenset(['script', 'style', 'noscript', 'template'])

# Block elements that can serve as a readable region
BLOCK_TAGS: frozenset[str] = frozenset([
    'p', 'li', 'blockquote', 'pre', 'article', 'section', 'div', 'td', 'th',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'dd', 'dt', 'figcaption', 'caption',
    'main', 'header', 'footer', 'address', 'details', 'summary',
])

# Structural regions that are skipped entirely
EXCLUDED_TAGS: frozenset[str] = frozenset(['nav', 'aside', 'img', 'svg', 'pre'])
EXCLUDED_ROLES: frozenset[str] = frozenset([
    'navigation', 'complementary', 'contentinfo', 'banner', 'img',
])

# Opening any of these closes an open <p>, as HTML parsers do
PARAGRAPH_CLOSERS: frozenset[str] = frozenset([
    'p', 'div', 'ul', 'ol', 'dl', 'table', 'blockquote', 'pre',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'section', 'article',
    'aside', 'nav', 'header', 'footer', 'main', 'figure', 'form',
    'hr', 'address', 'details',
])

# Elements closed by the start of a sibling of the same kind
SELF_CLOSING_SIBLINGS: frozenset[str] = frozenset(['li', 'dt', 'dd', 'option'])

EDITABLE_TAGS: frozenset[str] = frozenset(['input', 'textarea', 'select'])

READING_ROOT_TAGS: frozenset[str] = frozenset(['article', 'main'])

_HIDDEN_STYLE = re.compile(
    r"display\s*:\s*none|visibility\s*:\s*hidden|opacity\s*:\s*0(?:\.0*)?\s*(?:;|$)",
    re.IGNORECASE
)


@dataclass(eq=False)
class TextNode:
    """A run of text inside an element."""
    value: str
    parent: 'Element | None' = None

    def __repr__(self) -> str:
        return f"TextNode({self.value[:20]!r})"


@dataclass(eq=False)
class Element:
    """An element in the parsed document tree."""
    tag: str
    attrs: dict[str, str | None] = field(default_factory=dict)
    parent: 'Element | None' = None
    children: list['Element | TextNode'] = field(default_factory=list)

    def __repr__(self) -> str:
        ident = self.attrs.get("id")
        return f"Element(<{self.tag}{' #' + ident if ident else ''}>)"

    def append(self, child: 'Element | TextNode') -> None:
        """Add a child node."""
        child.parent = self
        self.children.append(child)

    def ancestors_and_self(self) -> Iterator['Element']:
        """Yield this element, then each ancestor up to the root."""
        node: Element | None = self
        while node is not None:
            yield node
            node = node.parent

    def closest(self, predicate: Callable[['Element'], bool]) -> 'Element | None':
        """Nearest element (self included) satisfying predicate."""
        for el in self.ancestors_and_self():
            if predicate(el):
                return el
        return None

    def contains(self, other: 'Element | TextNode') -> bool:
        """True if other is this element or one of its descendants."""
        node: Element | TextNode | None = other
        while node is not None:
            if node is self:
                return True
            node = node.parent
        return False

    def iter_nodes(self) -> Iterator['Element | TextNode']:
        """Pre-order traversal of all descendants."""
        for child in self.children:
            yield child
            if isinstance(child, Element):
                yield from child.iter_nodes()

    def iter_text_nodes(self) -> Iterator[TextNode]:
        """All descendant text nodes in document order."""
        for node in self.iter_nodes():
            if isinstance(node, TextNode):
                yield node

    def find_all(self, tag: str) -> list['Element']:
        """All descendant elements with the given tag."""
        return [n for n in self.iter_nodes() if isinstance(n, Element) and n.tag == tag]

    @property
    def text_content(self) -> str:
        """Concatenated text of all descendants."""
        return "".join(t.value for t in self.iter_text_nodes())

    def get_by_id(self, element_id: str) -> 'Element | None':
        """First descendant element with the given id attribute."""
        for node in self.iter_nodes():
            if isinstance(node, Element) and node.attrs.get("id") == element_id:
                return node
        return None


class DocumentTreeBuilder(HTMLParser):
    """HTML parser that builds an Element tree.

    Tolerates unclosed tags the way browsers do: an end tag closes the
    nearest open element with the same name, and stray end tags are ignored.
    """

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.root: Element = Element(tag="body")
        self.stack: list[Element] = [self.root]

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        """Open a new element under the current one."""
        if tag in ('html', 'body'):
            # Merge attributes onto the root rather than nesting
            self.root.attrs.update(dict(attrs))
            return
        self._close_implied(tag)
        element = Element(tag=tag, attrs=dict(attrs))
        self.stack[-1].append(element)
        if tag not in VOID_TAGS:
            self.stack.append(element)

    def _close_implied(self, tag: str) -> None:
        top = self.stack[-1]
        if len(self.stack) > 1 and top.tag == 'p' and tag in PARAGRAPH_CLOSERS:
            self.stack.pop()
            top = self.stack[-1]
        if len(self.stack) > 1 and tag in SELF_CLOSING_SIBLINGS and top.tag == tag:
            self.stack.pop()

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        """Self-closing tags never take children."""
        self.stack[-1].append(Element(tag=tag, attrs=dict(attrs)))

    def handle_endtag(self, tag: str) -> None:
        """Close the nearest open element with this tag."""
        for depth in range(len(self.stack) - 1, 0, -1):
            if self.stack[depth].tag == tag:
                del self.stack[depth:]
                return

    def handle_data(self, data: str) -> None:
        """Attach text to the current element."""
        if not data:
            return
        self.stack[-1].append(TextNode(value=data))


class Document:
    """A parsed document with a body element as its root."""

    def __init__(self, root: Element) -> None:
        self.root = root

    @classmethod
    def from_html(cls, html: str) -> 'Document':
        """Parse an HTML fragment or page."""
        builder = DocumentTreeBuilder()
        builder.feed(html)
        builder.close()
        return cls(builder.root)

    @classmethod
    def from_markdown(cls, text: str) -> 'Document':
        """Render Markdown to HTML and parse it."""
        rendered_html: str = markdown.markdown(
            text,
            extensions=['nl2br', 'sane_lists', 'tables']
        )
        return cls.from_html(f"<main>{rendered_html}</main>")

    @classmethod
    def from_text(cls, text: str) -> 'Document':
        """Plain text: blank lines separate paragraphs."""
        root = Element(tag="body")
        main = Element(tag="main")
        root.append(main)
        for block in re.split(r"\n\s*\n", text):
            if block.strip():
                paragraph = Element(tag="p")
                paragraph.append(TextNode(value=" ".join(block.split())))
                main.append(paragraph)
        return cls(root)


def _is_true_attr(value: str | None) -> bool:
    return value is None or value.lower() not in ('false', '0')


def is_excluded_from_reading(element: Element | None) -> bool:
    """True if element sits in hidden, inert or navigation-like content."""
    if element is None:
        return False
    for el in element.ancestors_and_self():
        attrs = el.attrs
        if attrs.get('aria-hidden') == 'true':
            return True
        if 'hidden' in attrs or 'inert' in attrs:
            return True
        if el.tag in EXCLUDED_TAGS:
            return True
        if (attrs.get('role') or '').lower() in EXCLUDED_ROLES:
            return True
        if el.tag == 'head':
            return True
    return False


def is_hidden_by_style(element: Element) -> bool:
    """Inline style hides the element (display/visibility/opacity)."""
    return any(_HIDDEN_STYLE.search(el.attrs.get('style') or '')
               for el in element.ancestors_and_self())


def is_editable(element: Element) -> bool:
    """True inside form fields or contenteditable content."""
    for el in element.ancestors_and_self():
        if el.tag in EDITABLE_TAGS:
            return True
        if 'contenteditable' in el.attrs and _is_true_attr(el.attrs['contenteditable']):
            return True
    return False


def is_readable_text(node: TextNode) -> bool:
    """Text that would be read aloud: visible, non-blank, not in scripts or fields."""
    if not node.value or not node.value.strip():
        return False
    parent = node.parent
    if parent is None:
        return False
    if parent.tag in NON_TEXT_TAGS:
        return False
    if is_excluded_from_reading(parent) or is_hidden_by_style(parent):
        return False
    return not is_editable(parent)


def is_candidate_block(element: Element | None) -> bool:
    """A visible block element with some text in it."""
    if element is None:
        return False
    if element.tag not in BLOCK_TAGS:
        return False
    if is_excluded_from_reading(element) or is_hidden_by_style(element):
        return False
    return bool(element.text_content.strip())


@dataclass
class CandidateBlock:
    """A readable block offered to an external content selector."""
    id: int
    region: Element
    tag: str
    words: int
    link_ratio: float
    snippet: str


class RegionProvider(ABC):
    """Answers structural questions about readable regions in a document."""

    @abstractmethod
    def region_for(self, node: Element | TextNode) -> Element | None:
        """Nearest readable region enclosing node."""

    @abstractmethod
    def readable_text_nodes(self, region: Element) -> list[TextNode]:
        """Readable text nodes inside region, in document order."""

    @abstractmethod
    def reading_root(self, region: Element | None) -> Element:
        """Structural root to build a reading flow over."""

    @abstractmethod
    def build_flow(self, root: Element) -> list[Element]:
        """Ordered list of readable regions under root."""

    @abstractmethod
    def walk(self, current: Element, forward: bool) -> Element | None:
        """Next/previous readable region in document order, or None."""


class DocumentRegionProvider(RegionProvider):
    """RegionProvider over a parsed Document."""

    SNIPPET_CHARS: int = 320

    def __init__(self, document: Document) -> None:
        self.document = document

    @property
    def body(self) -> Element:
        """The document's root element."""
        return self.document.root

    def _container_of(self, node: Element | TextNode) -> Element | None:
        el = node.parent if isinstance(node, TextNode) else node
        while el is not None and el is not self.body:
            if is_candidate_block(el):
                return el
            el = el.parent
        return None

    def region_for(self, node: Element | TextNode) -> Element | None:
        return self._container_of(node)

    def readable_text_nodes(self, region: Element) -> list[TextNode]:
        nodes = [n for n in region.iter_text_nodes() if is_readable_text(n)]
        if not is_candidate_block(region):
            return nodes
        # Text inside a nested block is read as that block's region
        own = [n for n in nodes if self._container_of(n) is region]
        return own or nodes

    def reading_root(self, region: Element | None) -> Element:
        if region is None:
            return self.body
        root = region.closest(
            lambda el: el.tag in READING_ROOT_TAGS or el.attrs.get('role') == 'main')
        return root or self.body

    def build_flow(self, root: Element) -> list[Element]:
        seen: set[int] = set()
        flow: list[Element] = []
        for node in root.iter_text_nodes():
            if not is_readable_text(node):
                continue
            container = self._container_of(node)
            if container is None or id(container) in seen:
                continue
            seen.add(id(container))
            flow.append(container)
        return flow

    def walk(self, current: Element, forward: bool) -> Element | None:
        root = self.reading_root(current)
        order: list[Element | TextNode] = list(root.iter_nodes())
        positions = {id(node): i for i, node in enumerate(order)}

        inside = [positions[id(n)] for n in current.iter_nodes() if id(n) in positions]
        own = positions.get(id(current))
        if inside:
            edge = max(inside) if forward else min(inside)
        elif own is not None:
            edge = own
        else:
            return None
        if not forward and own is not None:
            edge = min(edge, own)

        indices = range(edge + 1, len(order)) if forward else range(edge - 1, -1, -1)
        for i in indices:
            node = order[i]
            if not isinstance(node, TextNode) or not is_readable_text(node):
                continue
            container = self._container_of(node)
            if container is not None and container is not current \
                    and not current.contains(container):
                return container
        return None

    def candidate_blocks(self, min_words: int = 12, max_blocks: int | None = None
                         ) -> list[CandidateBlock]:
        """
        List readable blocks for an external content selector.

        Args:
            min_words: Blocks with fewer words are skipped
            max_blocks: Keep only the largest blocks (in document order)

        Returns:
            Candidate blocks in document order, ids counting from 0
        """
        candidates: list[CandidateBlock] = []
        for region in self.build_flow(self.body):
            text = region.text_content.strip()
            words = text.split()
            if len(words) < min_words:
                continue
            link_words = sum(len(a.text_content.split()) for a in region.find_all('a'))
            candidates.append(CandidateBlock(
                id=len(candidates),
                region=region,
                tag=region.tag,
                words=len(words),
                link_ratio=round(min(1.0, link_words / len(words)), 3),
                snippet=text[:self.SNIPPET_CHARS],
            ))

        if max_blocks is None or max_blocks <= 0 or len(candidates) <= max_blocks:
            return candidates
        keep = {c.id for c in sorted(candidates, key=lambda c: -c.words)[:max_blocks]}
        return [c for c in candidates if c.id in keep]
