"""
Message Relay — a producer and a consumer decoupled by an at-least-once queue.

- Producer SENDS one payload per tick
- Consumer POLLS (long-poll), processes, and DELETES only what succeeded
- Anything not deleted is redelivered by the queue after its visibility timeout
- Backends: in-memory (dev/test), Redis Streams, AWS SQS
"""
