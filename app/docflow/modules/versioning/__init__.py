"""
Document versioning and editorial review.

- Every edit is a new immutable version; content is never rewritten in place
- Versions move through a fixed state machine (draft, review, approval, publication)
- At most one published and one in-progress version per document
- Every transition is recorded to the append-only audit trail in the same transaction
"""
