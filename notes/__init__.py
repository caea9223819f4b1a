"""Organization notes: CRUD, sharing, favorites, comments and the activity log."""
