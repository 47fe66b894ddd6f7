# uasession/browse/__init__.py
from uasession.browse.paginator import BrowsePaginator, to_local_node_id
from uasession.browse.relative_path import parse_relative_path

__all__ = ["BrowsePaginator", "to_local_node_id", "parse_relative_path"]
