"""
Image batch transcoding service package.

Exposes the Redis work queue, the per-group batch tracker, the webhook
dispatcher and the worker pool that ties them to the JPEG transform unit.
"""
