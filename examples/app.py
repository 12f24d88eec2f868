from flask import Flask, jsonify, redirect
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import check_password_hash, generate_password_hash

from flask_keygate import KeyGate, SQLAlchemyIdentityStore, get_current_user

app = Flask(__name__)
app.config["SECRET_KEY"] = "dev-secret-change-in-production"
app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///keygate.db"
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

app.config["KEYGATE_RP_ID"] = "localhost"
app.config["KEYGATE_RP_NAME"] = "KeyGate Demo"
app.config["KEYGATE_ORIGIN"] = "http://localhost:5000"
app.config["KEYGATE_LOGIN_URL"] = "/login"

db = SQLAlchemy(app)

# Demo accounts; a real app checks its own user table
PASSWORD_HASHES = {
    "alice@example.com": generate_password_hash("alice-password"),
    "bob@example.com": generate_password_hash("bob-password"),
}


def check_password(username, password):
    pw_hash = PASSWORD_HASHES.get(username)
    return pw_hash is not None and check_password_hash(pw_hash, password)


with app.app_context():
    db.create_all()
    store = SQLAlchemyIdentityStore(db.session)
    keygate = KeyGate(app, identity_store=store, password_checker=check_password)


# Routes

@app.route("/")
def index():
    if keygate.is_authenticated():
        return redirect("/home")
    return redirect("/login")


@app.route("/login")
def login():
    # The page POSTs to /auth/initialize-authentication and, when asked for a
    # second factor, runs /auth/two-factor-options + /auth/authenticate-two-factor
    return jsonify({"login": "/auth/initialize-authentication"})


@app.route("/home")
@keygate.login_required
def home():
    user = get_current_user()
    return jsonify({
        "username": user["username"],
        "credentials": [c["name"] or c["credId"] for c in user["credentials"]],
    })


if __name__ == "__main__":
    app.run(debug=True)
