"""
Action handlers executed by workflows, macros and cadences.
"""
