"""
Listings module.

Owns articles, their promotions and the moderation ledger tables, plus the
seller-side "mark sold" transition.
"""
