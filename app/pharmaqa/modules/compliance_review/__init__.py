"""
Compliance Review module.

21 CFR Part 11 alignment (lightweight):
- Vendor documents move PENDING_REVIEW -> APPROVED | REJECTED exactly once
- Approvals require re-entering the reviewer's signature credential
- Every approval is fingerprinted, signed and anchored before it is committed
- Every decision is recorded to the append-only audit trail
"""
