"""
Law Pilot Intake Service
========================

Backend for the client intake wizard:
1. Guest uploads scoped to an anonymous session
2. Association of guest uploads into a client case on sign-in
3. Direct finalize of in-memory file selections for signed-in clients
4. Client dashboard of cases and documents
"""

__version__ = "1.0.0"
