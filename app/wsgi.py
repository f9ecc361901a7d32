from app.famlearn import create_app

app = create_app()
