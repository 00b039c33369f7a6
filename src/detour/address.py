"""Structured host addresses and reference parsing.

Brief:
  A reference looks like ``https://k05.exampleroot.org/p/1``: a lowercase
  alphabetic prefix, a server number, a root label, a domain label and a
  path. Everything else in detour works on the parsed form; strings are only
  produced for cache keys and for the final rewritten reference.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Optional

from .errors import ParseError

MAX_SERVER_NUM = 15
# Widest server number accepted when parsing an observed reference.
MAX_PARSED_DIGITS = 3
DEFAULT_NUMBER_WIDTH = 2

_REFERENCE_RE = re.compile(
    r"^(https?)://([a-z]+)(\d{1,3})\.([a-z0-9\-]+)\.([a-z]{2,})(/.*)$",
    re.IGNORECASE,
)
_HOST_BASE_RE = re.compile(
    r"^(?:https?://)?([a-z]+)(\d{1,3})\.([a-z0-9\-]+)\.([a-z]{2,})/?$",
    re.IGNORECASE,
)
# Host part of any address-shaped URL embedded in a larger string (srcset).
_EMBEDDED_HOST_RE = re.compile(
    r"https?://[a-z]+\d{1,3}\.[a-z0-9\-]+\.[a-z]{2,}", re.IGNORECASE
)


@dataclass(frozen=True)
class HostAddress:
    """
    Brief: Identifies one candidate server independent of any path.

    Inputs:
    - prefix: lowercase alphabetic label, e.g. 'n'
    - number: server number
    - root: root label, e.g. 'exampleroot'
    - domain: top-level label, e.g. 'org'
    - width: digit width used when serializing the number (not compared)

    Outputs:
    - HostAddress instance; equality is structural on the four labels.
    """

    prefix: str
    number: int
    root: str
    domain: str
    width: int = field(default=DEFAULT_NUMBER_WIDTH, compare=False, repr=False)

    @property
    def root_label(self) -> str:
        """Brief: 'root.domain' form used for root families."""
        return f"{self.root}.{self.domain}"

    def with_prefix(self, prefix: str) -> "HostAddress":
        return replace(self, prefix=prefix)

    def with_number(self, number: int) -> "HostAddress":
        return replace(self, number=int(number), width=DEFAULT_NUMBER_WIDTH)

    def with_root(self, root: str, domain: str) -> "HostAddress":
        return replace(self, root=root, domain=domain)

    def __str__(self) -> str:
        return to_host_base(self)


@dataclass(frozen=True)
class ParsedReference:
    """
    Brief: A parsed reference: host address plus the untouched path.

    Inputs:
    - address: HostAddress of the (possibly broken) origin
    - path: path including the leading '/', never rewritten
    - scheme: 'https' or 'http'

    Outputs:
    - ParsedReference instance
    """

    address: HostAddress
    path: str
    scheme: str = "https"

    @property
    def host_base(self) -> str:
        return to_host_base(self.address)

    def with_host(self, host: HostAddress) -> str:
        """Brief: Full reference for the same path served by another host."""
        return to_full_reference(host, self.path, self.scheme)

    def __str__(self) -> str:
        return to_full_reference(self.address, self.path, self.scheme)


def parse(reference: str) -> ParsedReference:
    """
    Brief: Parse a reference string into its structured form.

    Inputs:
    - reference: e.g. 'https://k05.exampleroot.org/p/1'

    Outputs:
    - ParsedReference with prefix/root/domain lower-cased

    Raises:
    - ParseError: when the reference is not a string or does not match
      scheme://prefix+number.root.domain/path

    Example:
        >>> ref = parse("https://K05.ExampleRoot.org/p/1")
        >>> ref.address.prefix, ref.address.number, ref.path
        ('k', 5, '/p/1')
    """
    if not isinstance(reference, str):
        raise ParseError(repr(reference), "reference must be a string")
    m = _REFERENCE_RE.match(reference.strip())
    if not m:
        raise ParseError(reference)
    scheme, prefix, digits, root, domain, path = m.groups()
    address = HostAddress(
        prefix=prefix.lower(),
        number=int(digits),
        root=root.lower(),
        domain=domain.lower(),
        width=len(digits),
    )
    return ParsedReference(address=address, path=path, scheme=scheme.lower())


def try_parse(reference: Optional[str]) -> Optional[ParsedReference]:
    """Brief: parse() returning None instead of raising ParseError."""
    if not reference:
        return None
    try:
        return parse(reference)
    except ParseError:
        return None


def parse_host_base(text: str) -> HostAddress:
    """
    Brief: Parse a host base such as 'n05.exampleroot.org'.

    Inputs:
    - text: host base, optionally with a scheme prefix and trailing slash

    Outputs:
    - HostAddress

    Raises:
    - ParseError when text is not a host base
    """
    if not isinstance(text, str):
        raise ParseError(repr(text), "host must be a string")
    m = _HOST_BASE_RE.match(text.strip())
    if not m:
        raise ParseError(text, "unrecognized host")
    prefix, digits, root, domain = m.groups()
    return HostAddress(
        prefix=prefix.lower(),
        number=int(digits),
        root=root.lower(),
        domain=domain.lower(),
        width=len(digits),
    )


def format_number(number: int, width: int = DEFAULT_NUMBER_WIDTH) -> str:
    return str(int(number)).zfill(max(1, int(width)))


def to_host_base(addr: HostAddress) -> str:
    """
    Brief: Canonical cache/statistics key for an address.

    Example:
        >>> to_host_base(HostAddress("n", 5, "exampleroot", "org"))
        'n05.exampleroot.org'
    """
    return f"{addr.prefix}{format_number(addr.number, addr.width)}.{addr.root}.{addr.domain}"


def to_full_reference(addr: HostAddress, path: str, scheme: str = "https") -> str:
    """Brief: Rebuild a full reference from an address and a path."""
    return f"{scheme}://{to_host_base(addr)}{path}"


def host_base_of(reference: str) -> Optional[str]:
    """Brief: Host base of a reference string, or None when unparseable."""
    parsed = try_parse(reference)
    return parsed.host_base if parsed else None


def path_key(path: str, segments: int = 3) -> str:
    """
    Brief: Leading path segments shared by sibling resources.

    Inputs:
    - path: reference path, e.g. '/media/abc/12/page.webp'
    - segments: number of leading segments kept (default 3)

    Outputs:
    - str: e.g. '/media/abc'

    Example:
        >>> path_key('/media/abc/12/page.webp')
        '/media/abc'
    """
    return "/".join(path.split("?", 1)[0].split("/")[:segments])


def rewrite_srcset(srcset: Optional[str], good_host: HostAddress, scheme: str = "https") -> Optional[str]:
    """
    Brief: Point every address-shaped URL inside a srcset at good_host.

    Inputs:
    - srcset: srcset-like string or None
    - good_host: replacement host

    Outputs:
    - Rewritten string, or None when srcset is empty
    """
    if not srcset:
        return None
    base = f"{scheme}://{to_host_base(good_host)}"
    return _EMBEDDED_HOST_RE.sub(base, srcset)
