from app.docflow import create_app

app = create_app()
