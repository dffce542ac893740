"""
All the structures used in the controller: either internal or from the API.

The structures do not depend on anything in the controller except other structs
and the general-purpose utilities.
"""
