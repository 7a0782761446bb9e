"""Personal Librarian: chat with your own documents."""
