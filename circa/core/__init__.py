#!/usr/bin/env python

"""
    Core module for Circa: the copy ledger, circulation, waiting lists
    and fines, and the db they share.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""
