"""Dice parsing, execution, modifier resolution and roll orchestration."""
