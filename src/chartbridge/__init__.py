"""chartbridge — Generate, parse, and reconcile C-CDA R2.1 clinical documents.

Produces continuity-of-care, referral, discharge, and transfer documents from
structured patient records, and reads documents of the same family back in.
"""

__version__ = "0.3.0"
