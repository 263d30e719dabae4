"""Collection names in the document store."""


class Collections:
    BOOKS = "books"
    WISHLIST = "wishlist"
    CART = "cart"
    CART_META = "cart_meta"
    NOTIFICATIONS = "notifications"
    NOTIFICATION_PREFERENCES = "notification_preferences"
