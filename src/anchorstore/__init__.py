"""anchorstore: pre-validated publishing of JSON documents to decentralized storage.

    gate.validate(op) -> resolver.store(doc) -> ar://<id> | ipfs://<cid> | ""

Nothing is written to a permanent store unless the ledger simulation accepted
the exact operation first.
"""
