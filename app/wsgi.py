from app.pharmaqa import create_app

app = create_app()
