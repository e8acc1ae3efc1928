"""
Allow-list HTML sanitization for rendered-HTML output.

How it works:
    1. Parse the markup into a tree of elements and text nodes.
    2. Walk the tree against a SanitizationPolicy:
       - disallowed elements are unwrapped (their children survive),
         except script-like elements, which go with all their content
       - disallowed attributes are dropped
       - URI attributes with a disallowed scheme are dropped
       - text is entity-encoded
    3. Canonicalise the result with nh3 (ammonia) under the same policy so
       the output is HTML5-serialised and re-sanitising it is a no-op.

Malformed input:
    Elements that are never closed are dropped (unwrapped), not auto-closed.
    Stray end tags are ignored. Input that cannot be parsed at all, or is
    nested deeper than `max_depth`, degrades to its escaped text.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

import nh3

from apishield.core.exceptions import PolicyConfigError, SanitizationParseError

logger = logging.getLogger(__name__)

VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "source", "track", "wbr",
})

# Removed together with everything inside them
DROP_CONTENT_TAGS = frozenset({
    "script", "style", "template", "iframe", "object", "noscript", "svg", "math",
})

URI_ATTRIBUTES = frozenset({
    "href", "src", "action", "formaction", "cite", "poster",
    "background", "longdesc", "data", "manifest", "xlink:href",
})

# Never allowed regardless of policy
FORBIDDEN_ATTRIBUTES = frozenset({"style", "srcset"})

GLOBAL_ATTRIBUTES_KEY = "*"

DEFAULT_MAX_DEPTH = 128

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")
_URI_NOISE_RE = re.compile(r"[\x00-\x20\x7f]+")


def uri_scheme(value: str) -> Optional[str]:
    """
    Scheme of a URI attribute value, lower-cased, or None for relative URIs.

    Whitespace and control characters are removed first, as browsers ignore
    them ("java\\tscript:" is still javascript:).
    """
    match = _SCHEME_RE.match(_URI_NOISE_RE.sub("", value))
    return match.group(1).lower() if match else None


@dataclass(frozen=True)
class SanitizationPolicy:
    """
    Allow-lists for tags, attributes per tag (`"*"` = any tag) and URI schemes.

    Immutable; validated on construction.
    """
    allowed_tags: FrozenSet[str] = frozenset()
    allowed_attributes: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    allowed_uri_schemes: FrozenSet[str] = frozenset({"http", "https", "mailto"})

    def __post_init__(self):
        tags = frozenset(tag.lower() for tag in self.allowed_tags)
        attributes = MappingProxyType({
            tag.lower(): frozenset(name.lower() for name in names)
            for tag, names in dict(self.allowed_attributes).items()
        })
        schemes = frozenset(scheme.lower().rstrip(":") for scheme in self.allowed_uri_schemes)
        object.__setattr__(self, "allowed_tags", tags)
        object.__setattr__(self, "allowed_attributes", attributes)
        object.__setattr__(self, "allowed_uri_schemes", schemes)
        self._validate()

    def _validate(self) -> None:
        unsafe_tags = self.allowed_tags & DROP_CONTENT_TAGS
        if unsafe_tags:
            raise PolicyConfigError(
                f"Tags cannot be allowed: {', '.join(sorted(unsafe_tags))}",
                component="sanitization"
            )
        for tag, names in self.allowed_attributes.items():
            unsafe = {n for n in names if n.startswith("on") or n in FORBIDDEN_ATTRIBUTES}
            if unsafe:
                raise PolicyConfigError(
                    f"Attributes cannot be allowed on '{tag}': {', '.join(sorted(unsafe))}",
                    component="sanitization"
                )
        if "javascript" in self.allowed_uri_schemes or "vbscript" in self.allowed_uri_schemes:
            raise PolicyConfigError("Script URI schemes cannot be allowed", component="sanitization")

    def attributes_for(self, tag: str) -> FrozenSet[str]:
        return (
            self.allowed_attributes.get(tag, frozenset())
            | self.allowed_attributes.get(GLOBAL_ATTRIBUTES_KEY, frozenset())
        )

    @classmethod
    def default(cls) -> "SanitizationPolicy":
        return cls(
            allowed_tags=frozenset({
                "a", "b", "blockquote", "br", "code", "em", "i", "img",
                "li", "ol", "p", "pre", "strong", "ul",
            }),
            allowed_attributes={
                "a": frozenset({"href", "title"}),
                "img": frozenset({"src", "alt", "title"}),
            },
        )


class _Text:
    __slots__ = ("data",)

    def __init__(self, data: str):
        self.data = data


class _Element:
    __slots__ = ("tag", "attrs", "children", "closed", "void")

    def __init__(self, tag: str, attrs: List, void: bool = False):
        self.tag = tag
        self.attrs = attrs
        self.children: List[Union["_Element", _Text]] = []
        self.closed = void
        self.void = void


class _TreeBuilder(HTMLParser):
    """Builds an element tree; unclosed elements keep `closed = False`"""

    def __init__(self, max_depth: int):
        super().__init__(convert_charrefs=True)
        self.max_depth = max_depth
        self.root = _Element("#root", [])
        self.root.closed = True
        self._stack: List[_Element] = [self.root]

    def handle_starttag(self, tag, attrs):
        element = _Element(tag, attrs, void=tag in VOID_ELEMENTS)
        self._stack[-1].children.append(element)
        if element.void:
            return
        if len(self._stack) > self.max_depth:
            raise SanitizationParseError(
                "Markup nested too deeply",
                details={'max_depth': self.max_depth}
            )
        self._stack.append(element)

    def handle_startendtag(self, tag, attrs):
        self.handle_starttag(tag, attrs)
        if tag not in VOID_ELEMENTS:
            self.handle_endtag(tag)

    def handle_endtag(self, tag):
        for index in range(len(self._stack) - 1, 0, -1):
            if self._stack[index].tag == tag:
                self._stack[index].closed = True
                # Anything opened after it and still open stays unclosed
                del self._stack[index:]
                return
        # Stray end tag: nothing to close

    def handle_data(self, data):
        children = self._stack[-1].children
        if children and isinstance(children[-1], _Text):
            children[-1].data += data
        else:
            children.append(_Text(data))

    def build(self, markup: str) -> _Element:
        try:
            self.feed(markup)
            self.close()
        except (AssertionError, ValueError) as e:
            raise SanitizationParseError(
                "Markup could not be parsed",
                details={'error_type': type(e).__name__}
            ) from e
        return self.root


class OutputSanitizer:
    """Turns untrusted markup into markup that is safe to render"""

    def __init__(
        self,
        policy: Optional[SanitizationPolicy] = None,
        max_depth: int = DEFAULT_MAX_DEPTH
    ):
        self.policy = policy or SanitizationPolicy.default()
        self.max_depth = max_depth

    def sanitize(self, raw_markup: Optional[str], policy: Optional[SanitizationPolicy] = None) -> str:
        """
        Sanitize markup under `policy` (the sanitizer's own policy by default).

        Never raises for bad markup; unparseable input comes back as escaped
        text.
        """
        if not raw_markup:
            return ""
        policy = policy or self.policy

        try:
            tree = _TreeBuilder(self.max_depth).build(raw_markup)
        except SanitizationParseError as e:
            logger.warning(f"⚠️ Sanitizer fell back to plain text: {e}")
            return self._canonicalise(html.escape(raw_markup, quote=False), policy)

        out: List[str] = []
        self._render_children(tree, policy, out)
        return self._canonicalise("".join(out), policy)

    def _render_children(self, node: _Element, policy: SanitizationPolicy, out: List[str]) -> None:
        for child in node.children:
            if isinstance(child, _Text):
                out.append(html.escape(child.data, quote=False))
                continue

            if child.tag in DROP_CONTENT_TAGS:
                continue

            if not child.closed or child.tag not in policy.allowed_tags:
                self._render_children(child, policy, out)
                continue

            out.append(f"<{child.tag}{self._render_attributes(child, policy)}>")
            if child.void:
                continue
            self._render_children(child, policy, out)
            out.append(f"</{child.tag}>")

    def _render_attributes(self, element: _Element, policy: SanitizationPolicy) -> str:
        allowed = policy.attributes_for(element.tag)
        seen = set()
        parts: List[str] = []
        for name, value in element.attrs:
            if name in seen or name not in allowed:
                continue
            seen.add(name)
            value = value or ""
            if name in URI_ATTRIBUTES:
                scheme = uri_scheme(value)
                if scheme is not None and scheme not in policy.allowed_uri_schemes:
                    logger.debug(f"Dropped {name} with scheme '{scheme}' on <{element.tag}>")
                    continue
            parts.append(f' {name}="{html.escape(value, quote=True)}"')
        return "".join(parts)

    @staticmethod
    def _canonicalise(markup: str, policy: SanitizationPolicy) -> str:
        return nh3.clean(
            markup,
            tags=set(policy.allowed_tags),
            attributes={tag: set(names) for tag, names in policy.allowed_attributes.items()},
            url_schemes=set(policy.allowed_uri_schemes),
            strip_comments=True,
            link_rel=None,
        )


def sanitize(raw_markup: Optional[str], policy: Optional[SanitizationPolicy] = None) -> str:
    """Module-level shortcut for a one-off sanitize call"""
    return OutputSanitizer(policy).sanitize(raw_markup)


def sanitize_fields(
    sanitizer: OutputSanitizer,
    payload: Union[Dict, List],
    field_paths: Iterable[str]
) -> Union[Dict, List]:
    """
    Sanitize string fields of a JSON payload in place.

    Paths are dotted (`"comments.body_html"`); lists along the way are
    walked element by element.
    """
    for path in field_paths:
        parts = [part for part in path.strip().split(".") if part]
        if parts:
            _sanitize_path(sanitizer, payload, parts)
    return payload


def _sanitize_path(sanitizer: OutputSanitizer, node, parts: List[str]) -> None:
    if isinstance(node, list):
        for item in node:
            _sanitize_path(sanitizer, item, parts)
        return
    if not isinstance(node, dict) or parts[0] not in node:
        return

    head, rest = parts[0], parts[1:]
    if rest:
        _sanitize_path(sanitizer, node[head], rest)
        return

    value = node[head]
    if isinstance(value, str):
        node[head] = sanitizer.sanitize(value)
    elif isinstance(value, list):
        node[head] = [sanitizer.sanitize(v) if isinstance(v, str) else v for v in value]
