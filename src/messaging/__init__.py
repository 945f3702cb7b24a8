"""Messaging — durable at-least-once queues, dead-letter routing, batch workers.

Modules
───────
  message      — Message envelope handed to consumers
  stream_queue — Redis-stream queue: visibility timeout, redrive to ``<name>-dlq``
  worker       — pull loop: receive batch -> per-item outcome -> ack / release / dead-letter
  report       — backlog and dead-letter report for operators
"""
