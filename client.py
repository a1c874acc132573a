import argparse
import os

import requests

DEFAULT_URL = "http://localhost:3000"


def predict_image(image_path, url=DEFAULT_URL):
    """Upload an image and return the parsed JSON prediction, or None on failure."""
    with open(image_path, "rb") as img_file:
        files = {"image": img_file}
        response = requests.post(f"{url}/predict", files=files)

    if response.status_code == 200:
        result = response.json()
        print(f"✅ Prediction: {result.get('predicted_class')} (index {result.get('predicted_class_index')})")
        return result

    print(f"❌ Failed: {response.status_code} - {response.text}")
    return None


def run_health_check(url=DEFAULT_URL):
    response = requests.get(f"{url}/health")
    if response.status_code == 200:
        print(f"✅ Health Check Passed: {response.json()}")
        return True

    print(f"❌ Health Check Failed: {response.status_code} - {response.text}")
    return False


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--image", type=str, help="Path to image for prediction")
    parser.add_argument("--url", type=str, default=DEFAULT_URL, help="Base URL of the prediction server")
    parser.add_argument("--test", action="store_true", help="Run a health check")

    args = parser.parse_args(argv)

    if args.test:
        print("Running health check...")
        return 0 if run_health_check(args.url) else 1

    if args.image:
        if not os.path.exists(args.image):
            print(f"❌ Image not found: {args.image}")
            return 1
        return 0 if predict_image(args.image, args.url) is not None else 1

    print("❌ Please provide --image <path> or --test")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
