"""
BattleGym — HTTP API
"""
