"""
Throughput test: chunk codec and endpoint on the server, transfer scheduler on the client.
"""
