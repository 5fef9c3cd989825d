"""
Core modules for Topic Quota Guard.

This package contains chunk reassembly, record classification, quota
reduction and the quota-gated recorder.
"""
