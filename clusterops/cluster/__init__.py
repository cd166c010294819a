"""Database cluster operations"""

__title__ = __doc__
