"""
Stays App - Guest Stay Lookup

Minimal read side of the hotel's stay registry. Voucher issuance needs to know
whether a stay exists, whether it is active, and its check-in/check-out window.
Stay CRUD lives in the property-management system and is not implemented here.
"""
