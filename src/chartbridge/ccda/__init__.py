"""C-CDA document generation and extraction."""

from chartbridge.ccda.composer import compose
from chartbridge.ccda.extract import extract
from chartbridge.ccda.templates import Category, DocumentKind
