"""
DMV Watch - scheduled SQL Server diagnostic queries with result archival
"""

from dmvwatch.core.constants import APP_NAME, APP_VERSION

__app_name__ = APP_NAME
__version__ = APP_VERSION

__all__ = ["__app_name__", "__version__"]
