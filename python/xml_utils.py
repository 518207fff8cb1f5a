"""
Shared XML utilities for the ingestion pipeline

This module contains common XML processing functions used by the feed
parsers and the HWPX extractor.

SECURITY: All XML parsing uses secure defaults to prevent XXE attacks.
"""

import logging
import re
from typing import Optional, Any, List

from lxml import etree

logger = logging.getLogger(__name__)


def get_secure_parser(recover: bool = False) -> etree.XMLParser:
    """Get a secure XML parser that prevents XXE attacks

    Args:
        recover: Let lxml skip over broken markup instead of failing

    Returns:
        lxml parser with DTD, entity resolution and network access disabled
    """
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        dtd_validation=False,
        load_dtd=False,
        huge_tree=False,
        recover=recover
    )


def secure_fromstring(data: bytes, recover: bool = False) -> Any:
    """Securely parse XML bytes, returning the root element

    Raises:
        etree.XMLSyntaxError: If the document is not well-formed
    """
    root = etree.fromstring(data, get_secure_parser(recover=recover))
    if root is None:
        raise etree.XMLSyntaxError("empty document", None, 0, 0)
    return root


def strip_namespaces(root: Any) -> Any:
    """Remove namespaces from every element tag in place

    Feeds are published both with and without a default namespace; lookups
    downstream use bare tag names.
    """
    for elem in root.iter():
        if not isinstance(elem.tag, str):
            continue
        elem.tag = etree.QName(elem).localname
    etree.cleanup_namespaces(root)
    return root


def local_name(elem: Any) -> str:
    """Tag name without namespace"""
    if not isinstance(elem.tag, str):
        return ''
    return etree.QName(elem).localname


def sanitize_for_logging(text: str) -> str:
    """Sanitize text for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: Untrusted text (document content, remote error bodies)

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    # Truncate to reasonable length
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def get_text_from_element(elem: Any, path: str) -> Optional[str]:
    """Safely get text content from an XML element

    Args:
        elem: Parent XML element
        path: XPath-style path to child element

    Returns:
        Stripped text content or None if element not found or empty
    """
    child = elem.find(path)
    if child is not None and child.text:
        text = child.text.strip()
        return text or None
    return None


def find_all(elem: Any, path: str) -> List[Any]:
    """Find child elements, always as a list

    Elements that may appear zero, one or many times are never treated
    as singular.
    """
    if elem is None:
        return []
    return list(elem.findall(path))
