"""Authorization layer.

Read access is open to everyone. Write access to stories and tags belongs to a single
administrator identity (AUTH_ADMIN_EMAIL); favourites need any signed-in identity.
"""
