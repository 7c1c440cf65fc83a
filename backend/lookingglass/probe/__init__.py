"""
Network probes: command execution, live MTR parsing and per-hop statistics.
"""
