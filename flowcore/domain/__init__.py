"""Domain layer - entities, enumerations and errors"""
