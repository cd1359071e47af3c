from app.closet import create_app

app = create_app()
