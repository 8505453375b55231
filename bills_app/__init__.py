# bills_app/__init__.py
