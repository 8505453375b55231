# bills_app/DB/__init__.py
