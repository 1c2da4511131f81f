"""Interactive dev sessions driven by the Laminar dashboard.

@public
"""

from ._cli import DevOptions, main, parse_dev_options
from .session import DevSession

__all__ = ["DevOptions", "DevSession", "main", "parse_dev_options"]
