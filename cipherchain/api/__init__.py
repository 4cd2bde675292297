# HTTP and WebSocket surfaces of the ledger
