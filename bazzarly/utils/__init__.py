"""
Request-boundary utilities: sanitizers, declarative validators, response
envelopes and error handlers.
"""
