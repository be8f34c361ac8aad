"""Profile provisioning for newly created identities.

Creates an application profile for every identity the authentication
provider creates: a fail-open hook on signup, a reconciliation sweep that
repairs whatever the hook missed, an append-only lifecycle ledger, an error
store for operator triage, and read-only correlation and anomaly reports
over the provider's audit trail.
"""
