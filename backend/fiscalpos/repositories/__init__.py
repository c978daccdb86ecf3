# Overview: Narrow data-access functions for sales, fiscal documents and the cash ledger.
