"""Category definitions and per-user cleanup policy resolution"""
