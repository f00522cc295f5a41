"""attestpay — verified-work payroll claims and payout relay.

Claims escrowed pay only against proof of work attested by the Flare
Data Connector, and mirrors settled claims onto a second ledger.
"""

__version__ = "0.1.0"
