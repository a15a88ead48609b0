from typing import Union

# -------- Aliases (clarify intent) --------
AccountId = int
Instrument = str  # e.g., "EUR_USD"
TransactionId = int
PartitionKey = Union[AccountId, Instrument]
