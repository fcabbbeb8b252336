'''
Lingua School billing backend.

Balance ledger, due-date and cancellation-fee policies, period settlements
and teacher payouts for a multi-tenant language school.
'''
__version__ = "0.1.0"
