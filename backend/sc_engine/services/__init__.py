"""SC Engine - Services"""
