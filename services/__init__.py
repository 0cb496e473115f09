"""
services/ - Business Logic Layer
=================================
Processor, scheduler, subscription state machine, gateway adapter and
webhook reconciliation. Services receive their repositories and
collaborators through their constructors.
"""
