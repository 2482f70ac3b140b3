"""UI integration surface: collection bindings consumed by the screens."""

from bondapp.ui.collection_binding import CollectionBinding, bind_collection

__all__ = ["CollectionBinding", "bind_collection"]
