"""
Concrete collaborators: the GitHub job source and the SSH remote executor.

Imported lazily by the actor so the core stays usable without network libraries.
"""
