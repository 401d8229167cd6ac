"""auth/ -- Authentication and authorization package for the E-QMS API.

Layer rule: auth/ imports from core/ (error taxonomy, DB helpers), audit/
(the recorder SessionIssuer writes authentication events through) and
third-party libraries. It does NOT import from api/ or equipment/.
api/ imports from auth/, not the other way around.
"""
