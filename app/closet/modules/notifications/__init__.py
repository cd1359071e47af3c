"""
Notifications module: feed items, per-recipient notifications and the
read model that collapses at-least-once duplicates.
"""
