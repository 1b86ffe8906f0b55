#!/usr/bin/env python

"""
    Circa, the circulation engine for shared-resource libraries

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

__version__ = '0.1.0'
